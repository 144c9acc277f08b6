"""DuckDB-based watermark storage.

Persists the per-device "read up to" timestamp for every (user, room) pair
in an embedded DuckDB file. The service implements the singleton pattern so
the process holds a single connection.

Database Schema:
    watermarks table:
        - user_id: Signed-in user on this device
        - room_id: Chat room identifier
        - read_at: ISO-8601 timestamp (UTC) of the last read
        PRIMARY KEY (user_id, room_id)

Semantics:
    ``set`` is last-write-wins: a later call always replaces the stored value,
    even when the new timestamp is earlier. No merge, no cross-device sync.

Usage:
    store = WatermarkStore.get_instance()
    store.set("user-1", "room-1", datetime.now(timezone.utc))
    read_at = store.get("user-1", "room-1")
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import duckdb

from roomsync.errors import PersistenceError

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Singleton store mapping (user, room) to a last-read timestamp.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["WatermarkStore"] = None
    _db_path: str = "watermarks.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: Path to DuckDB file, or ":memory:". Defaults to
                "watermarks.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "WatermarkStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        try:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS watermarks (
                    user_id VARCHAR NOT NULL,
                    room_id VARCHAR NOT NULL,
                    read_at VARCHAR NOT NULL,
                    PRIMARY KEY (user_id, room_id)
                )
            """)
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to open watermark store at {self._db_path}: {e}") from e
        logger.info("[Watermarks] Initialized with db=%s", self._db_path)

    def get(self, user_id: str, room_id: str) -> Optional[datetime]:
        """Return the stored watermark, or None if the room was never read.

        Raises:
            PersistenceError: If the database cannot be read.
        """
        try:
            row = self._get_connection().execute(
                "SELECT read_at FROM watermarks WHERE user_id = ? AND room_id = ?",
                [user_id, room_id],
            ).fetchone()
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to read watermark for room {room_id}: {e}") from e
        if row is None:
            return None
        return datetime.fromisoformat(row[0])

    def set(self, user_id: str, room_id: str, timestamp: datetime) -> None:
        """Overwrite the watermark for (user, room).

        Raises:
            PersistenceError: If the write fails.
        """
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        try:
            self._get_connection().execute(
                "INSERT OR REPLACE INTO watermarks (user_id, room_id, read_at) VALUES (?, ?, ?)",
                [user_id, room_id, timestamp.isoformat()],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to write watermark for room {room_id}: {e}") from e

    def delete(self, user_id: str, room_id: str) -> None:
        """Forget the watermark so the room reads as never opened.

        Raises:
            PersistenceError: If the delete fails.
        """
        try:
            self._get_connection().execute(
                "DELETE FROM watermarks WHERE user_id = ? AND room_id = ?",
                [user_id, room_id],
            )
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to delete watermark for room {room_id}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
