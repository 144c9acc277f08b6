"""SyncEngine: wires the sync components for the signed-in user.

One engine per client process. A module-level singleton is initialised in
``roomsync/main.py`` from config; tests build their own.
"""
import logging
from typing import Optional

from roomsync.chat.profiles import ProfileDirectory
from roomsync.chat.session import RoomSessionController
from roomsync.config import AppConfig
from roomsync.datasource.base import DataService
from roomsync.datasource.memory import InMemoryDataService
from roomsync.unread.counter import UnreadCounter
from roomsync.unread.store import WatermarkStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_engine: Optional["SyncEngine"] = None


def get_engine() -> Optional["SyncEngine"]:
    """Return the global SyncEngine, or None if not yet initialised."""
    return _engine


def set_engine(engine: Optional["SyncEngine"]) -> None:
    """Set (or clear) the global SyncEngine instance."""
    global _engine
    _engine = engine


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SyncEngine:
    """Owns the data service, watermark store, unread counter and rooms.

    Args:
        config: Application configuration.
        data_service: Backend to use; defaults to the in-memory backend.
        store: Watermark store; defaults to the process-wide instance
            opened from config.
    """

    def __init__(
        self,
        config: AppConfig,
        data_service: Optional[DataService] = None,
        store: Optional[WatermarkStore] = None,
    ) -> None:
        self.config = config
        self.user_id = config.client.user_id
        self.data = data_service or InMemoryDataService()
        self._owns_store = store is None
        self.store = store or WatermarkStore.get_instance(config.watermarks.db_path)

        self.profiles = ProfileDirectory(self.data)
        self.profiles.remember(self.user_id, config.client.display_name)

        self.counter = UnreadCounter(
            self.data,
            self.store,
            self.user_id,
            dedup_cache_size=config.realtime.dedup_cache_size,
        )
        self.rooms = RoomSessionController(
            self.data,
            self.counter,
            self.user_id,
            config.client.display_name,
            profiles=self.profiles,
            backfill_limit=config.realtime.backfill_limit,
            typing_ttl=config.realtime.typing_ttl_seconds,
        )

    async def start(self) -> None:
        """Start the global unread stream and take the first snapshot."""
        await self.counter.start()
        counts = await self.counter.refresh_all()
        logger.info(f"[Engine] Started for {self.user_id}: {len(counts)} rooms, {self.counter.total} unread")

    async def stop(self) -> None:
        await self.rooms.close()
        await self.counter.stop()
        await self.profiles.close()
        if self._owns_store:
            WatermarkStore.reset_instance()
        else:
            self.store.close()
        logger.info("[Engine] Stopped")
