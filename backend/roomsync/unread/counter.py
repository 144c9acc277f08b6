"""Per-room unread counts driven by watermarks and the global message stream.

The counter runs independently of whichever room is open. It subscribes to
every message insert across all rooms and keeps a cached count per room:

    refresh_all()  - rebuild every count from the data service
    live insert    - +1 when the message is newer than the room's watermark
    mark_read()    - zero the room and stamp its watermark with "now"

Counting rules (both paths):
    - messages authored by the signed-in user never count
    - no watermark means "never opened": everything counts
    - otherwise only messages with created_at strictly after the watermark

The room that is currently open is skipped by the live path; the session
controller zeroed it on entry and stamps it again on exit.

Refresh and live events may interleave freely:
    - each room's query returns the ids it covered; a later live event for
      one of those ids is not counted again
    - live increments that land while a room's query is in flight are
      merged into that room's result instead of being overwritten
    - a room marked read mid-query discards the query result

Performance Notes:
    - Live inserts are deduplicated by message id with an OrderedDict LRU,
      so at-least-once redelivery cannot inflate a count.
    - The total is derived from the per-room counts on every access.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from roomsync.datasource.base import DataService, Subscription
from roomsync.datasource.schemas import MESSAGES_TABLE, ChangeEvent, EventType, Message
from roomsync.errors import MalformedEventError, PersistenceError, SubscriptionLostError, TransientFetchError

from .store import WatermarkStore

logger = logging.getLogger(__name__)

# Maximum number of message IDs remembered for deduplication
MESSAGE_DEDUP_CACHE_SIZE = 10000

# Badges show at most two digits
BADGE_LIMIT = 99

CountsListener = Callable[[Dict[str, int]], None]


def badge_label(count: int) -> str:
    """Render a room badge: "" for zero, "99+" past the limit."""
    if count <= 0:
        return ""
    return f"{BADGE_LIMIT}+" if count > BADGE_LIMIT else str(count)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReadState:
    """A room's unread bookkeeping captured before a mark_read."""
    count: int
    watermark: Optional[datetime]
    # False when the store could not be read; the stored row is left alone
    watermark_known: bool = True


class UnreadCounter:
    """Maintains per-room unread counts for one signed-in user.

    Args:
        data_service: Backend used for room listing, counts and the live stream.
        store: Durable watermark store.
        user_id: The signed-in user; their own messages never count.
        dedup_cache_size: How many message ids to remember for dedup.
        clock: Source of "now" for mark_read.
    """

    def __init__(
        self,
        data_service: DataService,
        store: WatermarkStore,
        user_id: str,
        dedup_cache_size: int = MESSAGE_DEDUP_CACHE_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._data = data_service
        self._store = store
        self._user_id = user_id
        self._clock = clock or _utcnow
        self._dedup_cache_size = dedup_cache_size

        # room_id -> cached unread count
        self._counts: Dict[str, int] = {}
        # room_id -> watermark known to this process (written here or read once)
        self._read_marks: Dict[str, datetime] = {}
        # message ids already applied by the live path (LRU)
        self._seen_ids: OrderedDict = OrderedDict()
        # room_id -> ids covered by the last completed count query
        self._counted_ids: Dict[str, Set[str]] = {}
        # room_id -> ids applied live while that room's query is in flight
        self._in_flight: Dict[str, Set[str]] = {}
        # rooms whose watermark could not be read (logged once)
        self._unreadable: Set[str] = set()

        self._active_room: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._listeners: List[CountsListener] = []
        self.stale = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Subscribe to inserts in every room.

        Returns:
            True if the live stream is established, False if it is stale.
        """
        if self._subscription is not None:
            return True
        try:
            self._subscription = await self._data.subscribe(MESSAGES_TABLE, self._on_change)
        except SubscriptionLostError as e:
            self.stale = True
            logger.warning(f"[Unread] Live stream unavailable, counts may lag: {e.message}")
            return False
        self.stale = False
        logger.info(f"[Unread] Tracking unread messages for user {self._user_id}")
        return True

    async def stop(self) -> None:
        """Drop the live subscription. Safe to call twice."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    @property
    def active_room(self) -> Optional[str]:
        return self._active_room

    def count_for(self, room_id: str) -> int:
        return self._counts.get(room_id, 0)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_active_room(self, room_id: Optional[str]) -> None:
        """Mark which room is open; the live path skips it."""
        self._active_room = room_id

    def mark_read(self, room_id: str) -> datetime:
        """Zero the room and stamp its watermark with the current time.

        Synchronous so callers can apply it before anything else touches
        the room. A failed write is logged; the in-memory watermark still
        governs the live path for this process.

        Returns:
            The watermark that was set.
        """
        now = self._clock()
        self._read_marks[room_id] = now
        self._unreadable.discard(room_id)
        # An in-flight query for this room used the old watermark.
        self._in_flight.pop(room_id, None)
        try:
            self._store.set(self._user_id, room_id, now)
        except PersistenceError as e:
            logger.error(f"[Unread] Watermark not persisted for room {room_id}: {e.message}")
        self._replace_counts({**self._counts, room_id: 0})
        return now

    def capture_read(self, room_id: str) -> ReadState:
        """Snapshot the room's count and watermark for a later restore_read."""
        try:
            watermark = self._load_watermark(room_id)
        except PersistenceError:
            return ReadState(self.count_for(room_id), None, watermark_known=False)
        return ReadState(self.count_for(room_id), watermark)

    def restore_read(self, room_id: str, state: ReadState) -> None:
        """Undo a mark_read whose messages the user never saw.

        A ``None`` watermark restores the "never read" state.
        """
        self._in_flight.pop(room_id, None)
        self._read_marks.pop(room_id, None)
        if state.watermark_known:
            try:
                if state.watermark is None:
                    self._store.delete(self._user_id, room_id)
                else:
                    self._read_marks[room_id] = state.watermark
                    self._store.set(self._user_id, room_id, state.watermark)
            except PersistenceError as e:
                logger.error(f"[Unread] Watermark not restored for room {room_id}: {e.message}")
        self._replace_counts({**self._counts, room_id: state.count})
        logger.info(f"[Unread] Restored room {room_id} to {state.count} unread")

    async def refresh_all(self) -> Dict[str, int]:
        """Recompute every room's count from the data service.

        Rooms whose query fails, or whose watermark cannot be read, keep
        their last-known value.
        """
        try:
            rooms = await self._data.list_rooms()
        except TransientFetchError as e:
            logger.warning(f"[Unread] Refresh skipped: {e.message}")
            return self.counts

        for room in rooms:
            if room.id == self._active_room:
                self._set_count(room.id, 0)
                continue
            try:
                watermark = self._load_watermark(room.id)
            except PersistenceError:
                continue

            applied_live: Set[str] = set()
            self._in_flight[room.id] = applied_live
            try:
                ids = await self._data.list_message_ids(
                    room.id, exclude_user_id=self._user_id, after=watermark
                )
            except TransientFetchError as e:
                logger.warning(f"[Unread] Keeping last count for room {room.id}: {e.message}")
                if self._in_flight.get(room.id) is applied_live:
                    del self._in_flight[room.id]
                continue

            if self._in_flight.get(room.id) is not applied_live:
                # Marked read (or restored) while the query ran.
                continue
            del self._in_flight[room.id]

            covered = set(ids)
            self._counted_ids[room.id] = covered
            if room.id == self._active_room:
                self._set_count(room.id, 0)
            else:
                self._set_count(room.id, len(covered | applied_live))

        logger.debug(f"[Unread] Refreshed {len(rooms)} rooms, total={self.total}")
        return self.counts

    def apply_message(self, message: Message) -> bool:
        """Apply one live insert. Returns True if a count was incremented."""
        room_id = message.room_id
        if message.user_id == self._user_id:
            return False
        if room_id == self._active_room:
            return False
        if message.id in self._counted_ids.get(room_id, ()):
            return False

        try:
            watermark = self._load_watermark(room_id)
        except PersistenceError:
            return False
        if watermark is not None and message.created_at <= watermark:
            return False
        if self._is_duplicate(message.id):
            return False

        pending = self._in_flight.get(room_id)
        if pending is not None:
            pending.add(message.id)
        self._set_count(room_id, self._counts.get(room_id, 0) + 1)
        return True

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: CountsListener) -> Callable[[], None]:
        """Register a callback for count changes. Returns an unsubscribe."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.type != EventType.INSERT:
            return
        try:
            message = Message.from_record(event.new)
        except MalformedEventError as e:
            logger.warning(f"[Unread] Dropped event: {e.message}")
            return
        self.apply_message(message)

    def _load_watermark(self, room_id: str) -> Optional[datetime]:
        """Known watermark for the room; raises PersistenceError if unreadable."""
        local = self._read_marks.get(room_id)
        if local is not None:
            return local
        try:
            stored = self._store.get(self._user_id, room_id)
        except PersistenceError as e:
            if room_id not in self._unreadable:
                self._unreadable.add(room_id)
                logger.error(f"[Unread] Holding count for room {room_id}: {e.message}")
            raise
        self._unreadable.discard(room_id)
        if stored is not None:
            self._read_marks[room_id] = stored
        return stored

    def _is_duplicate(self, message_id: str) -> bool:
        if message_id in self._seen_ids:
            self._seen_ids.move_to_end(message_id)
            return True
        self._seen_ids[message_id] = True
        while len(self._seen_ids) > self._dedup_cache_size:
            self._seen_ids.popitem(last=False)
        return False

    def _set_count(self, room_id: str, count: int) -> None:
        if room_id in self._counts and self._counts[room_id] == count:
            return
        self._replace_counts({**self._counts, room_id: count})

    def _replace_counts(self, counts: Dict[str, int]) -> None:
        self._counts = counts
        snapshot = dict(counts)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"[Unread] Listener failed: {e}")
