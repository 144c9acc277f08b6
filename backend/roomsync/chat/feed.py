"""Message feed reconciliation for one open room.

Merges the backfill snapshot with the room's live insert/delete stream into
a single ordered, duplicate-free sequence.

Invariants:
    - unique by message id
    - ascending by created_at; equal timestamps keep arrival order
    - a message deleted before its backfill copy arrives stays deleted

The feed is an immutable tuple. Each event computes the next tuple from the
previous one (``merge_message`` / ``remove_message``), so listeners always
see a consistent snapshot and the transitions are testable in isolation.

The live subscription is opened before the backfill query so nothing falls
into the gap between them; the race this creates is resolved by dedup.
"""
import logging
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

from roomsync.datasource.base import DataService, Subscription
from roomsync.datasource.schemas import MESSAGES_TABLE, ChangeEvent, EventType, Message
from roomsync.errors import MalformedEventError, SubscriptionLostError, TransientFetchError

from .profiles import ProfileDirectory

logger = logging.getLogger(__name__)

# Most recent messages loaded when a room is opened
DEFAULT_BACKFILL_LIMIT = 100

Feed = Tuple[Message, ...]
FeedListener = Callable[[Feed], None]


def merge_message(feed: Feed, message: Message) -> Feed:
    """Return ``feed`` with ``message`` inserted in timestamp order.

    Returns the same tuple when the id is already present.
    """
    if any(existing.id == message.id for existing in feed):
        return feed
    index = len(feed)
    # Walk back from the end: live messages are almost always newest.
    while index > 0 and feed[index - 1].created_at > message.created_at:
        index -= 1
    return feed[:index] + (message,) + feed[index:]


def remove_message(feed: Feed, message_id: str) -> Feed:
    """Return ``feed`` without ``message_id``; unchanged if absent."""
    if not any(existing.id == message_id for existing in feed):
        return feed
    return tuple(m for m in feed if m.id != message_id)


class FeedState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    STALE = "stale"
    FAILED = "failed"
    CLOSED = "closed"


class MessageFeedReconciler:
    """Backfill + live stream for a single room, opened once.

    Args:
        data_service: Source of the backfill and the change stream.
        room_id: Room to follow.
        profiles: Optional directory used to pre-resolve author names.
        backfill_limit: How many recent messages to load on open.
        on_message: Called for each new live message (not for duplicates).
    """

    def __init__(
        self,
        data_service: DataService,
        room_id: str,
        profiles: Optional[ProfileDirectory] = None,
        backfill_limit: int = DEFAULT_BACKFILL_LIMIT,
        on_message: Optional[Callable[[Message], None]] = None,
    ) -> None:
        self.room_id = room_id
        self._data = data_service
        self._profiles = profiles
        self._backfill_limit = backfill_limit
        self._on_message = on_message

        self._feed: Feed = ()
        self._deleted_ids: Set[str] = set()
        self._subscription: Optional[Subscription] = None
        self._listeners: List[FeedListener] = []
        self.state = FeedState.IDLE

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def messages(self) -> Feed:
        return self._feed

    @property
    def stale(self) -> bool:
        return self.state == FeedState.STALE

    @property
    def closed(self) -> bool:
        return self.state == FeedState.CLOSED

    def add_listener(self, listener: FeedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> Feed:
        """Start the live stream and load the backfill.

        Raises:
            TransientFetchError: The backfill failed; the feed is empty and
                the live stream has been torn down. Retry with a new
                reconciler.
        """
        if self.state != FeedState.IDLE:
            raise RuntimeError(f"Feed for room {self.room_id} already opened ({self.state.value})")
        self.state = FeedState.LOADING

        subscribed = await self._subscribe()

        try:
            backlog = await self._data.fetch_messages(self.room_id, self._backfill_limit)
        except TransientFetchError:
            logger.warning(f"[Feed] Backfill failed for room {self.room_id}")
            self._feed = ()
            self.state = FeedState.FAILED
            await self._unsubscribe()
            raise

        if self.closed:
            return self._feed

        feed = self._feed
        for message in backlog:
            if message.room_id != self.room_id or message.id in self._deleted_ids:
                continue
            feed = merge_message(feed, message)
        self.state = FeedState.LIVE if subscribed else FeedState.STALE
        self._publish(feed)

        if self._profiles is not None:
            for user_id in {m.user_id for m in feed}:
                self._profiles.prefetch(user_id, self._on_name_resolved)

        logger.info(
            f"[Feed] Room {self.room_id} opened with {len(feed)} messages "
            f"(backfill={len(backlog)}, state={self.state.value})"
        )
        return self._feed

    async def retry_subscription(self) -> bool:
        """Try to re-establish a lost live stream. Returns True if live.

        Messages that arrived while stale are not replayed; re-open the room
        to close the gap.
        """
        if self.state != FeedState.STALE:
            return self.state == FeedState.LIVE
        if await self._subscribe():
            self.state = FeedState.LIVE
            return True
        return False

    async def close(self) -> None:
        """Stop following the room. Idempotent; later events are ignored."""
        if self.closed:
            return
        self.state = FeedState.CLOSED
        self._listeners.clear()
        await self._unsubscribe()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _on_change(self, event: ChangeEvent) -> None:
        if self.state in (FeedState.CLOSED, FeedState.FAILED):
            return
        try:
            if event.type == EventType.INSERT:
                self._handle_insert(Message.from_record(event.new))
            elif event.type == EventType.DELETE:
                self._handle_delete(event.old)
        except MalformedEventError as e:
            logger.warning(f"[Feed] Dropped event in room {self.room_id}: {e.message}")

    def _handle_insert(self, message: Message) -> None:
        if message.room_id != self.room_id or message.id in self._deleted_ids:
            return
        feed = merge_message(self._feed, message)
        if feed is self._feed:
            logger.debug(f"[Feed] Duplicate message ignored: {message.id}")
            return
        self._publish(feed)
        if self._profiles is not None:
            self._profiles.prefetch(message.user_id, self._on_name_resolved)
        if self._on_message is not None:
            self._on_message(message)

    def _handle_delete(self, old: Optional[dict]) -> None:
        message_id = (old or {}).get("id")
        if not message_id:
            raise MalformedEventError("delete without id", payload=old)
        self._deleted_ids.add(message_id)
        feed = remove_message(self._feed, message_id)
        if feed is not self._feed:
            self._publish(feed)

    def _on_name_resolved(self, user_id: str, name: str) -> None:
        # Names are looked up at render time; re-emit so labels refresh.
        if self.closed:
            return
        if any(m.user_id == user_id for m in self._feed):
            self._publish(self._feed)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _subscribe(self) -> bool:
        try:
            self._subscription = await self._data.subscribe(
                MESSAGES_TABLE, self._on_change, room_id=self.room_id
            )
        except SubscriptionLostError as e:
            logger.warning(f"[Feed] Room {self.room_id} is stale, live stream failed: {e.message}")
            return False
        return True

    async def _unsubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    def _publish(self, feed: Feed) -> None:
        self._feed = feed
        for listener in list(self._listeners):
            try:
                listener(feed)
            except Exception as e:
                logger.error(f"[Feed] Listener failed: {e}")
