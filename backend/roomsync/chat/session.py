"""Room entry/exit orchestration.

Opening a room:
    1. close whatever room was open
    2. mark the room read and tell the unread counter it is active; both are
       synchronous, so no live increment for the room can land in between
    3. start presence, then the feed (backfill + live)

Closing a room stamps its watermark again ("read up to now") and throws the
whole RoomSession away. Callbacks created for a session check that it is
still the current one, so a late event from a closed session can never touch
a newer session, even one for the same room id.
"""
import itertools
import logging
import time
from typing import Callable, Optional

from roomsync.datasource.base import DataService
from roomsync.datasource.schemas import Message
from roomsync.errors import TransientFetchError
from roomsync.unread.counter import UnreadCounter

from .feed import DEFAULT_BACKFILL_LIMIT, MessageFeedReconciler
from .presence import DEFAULT_TYPING_TTL, PresenceTracker
from .profiles import ProfileDirectory

logger = logging.getLogger(__name__)


class RoomSession:
    """State belonging to a single open of a single room.

    Attributes:
        room_id: The open room.
        generation: Token unique to this open; never reused.
        feed: Reconciled message feed.
        presence: Typing presence tracker.
    """

    def __init__(self, room_id: str, generation: int, presence: PresenceTracker) -> None:
        self.room_id = room_id
        self.generation = generation
        self.presence = presence
        self.feed: Optional[MessageFeedReconciler] = None
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.feed is not None:
            await self.feed.close()
        await self.presence.close()


class RoomSessionController:
    """Opens and closes rooms for the signed-in user.

    Args:
        data_service: External data backend.
        counter: Unread counter to zero/skip the open room.
        user_id: Signed-in user.
        display_name: Name shown in our typing signals.
        profiles: Shared display-name directory.
        backfill_limit: Messages loaded on open.
        typing_ttl: Typing expiry in seconds.
        presence_clock: Monotonic clock for presence deadlines.
    """

    def __init__(
        self,
        data_service: DataService,
        counter: UnreadCounter,
        user_id: str,
        display_name: str,
        profiles: Optional[ProfileDirectory] = None,
        backfill_limit: int = DEFAULT_BACKFILL_LIMIT,
        typing_ttl: float = DEFAULT_TYPING_TTL,
        presence_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._data = data_service
        self._counter = counter
        self._user_id = user_id
        self._display_name = display_name
        self._profiles = profiles
        self._backfill_limit = backfill_limit
        self._typing_ttl = typing_ttl
        self._presence_clock = presence_clock
        self._generations = itertools.count(1)
        self._session: Optional[RoomSession] = None

    @property
    def session(self) -> Optional[RoomSession]:
        return self._session

    @property
    def room_id(self) -> Optional[str]:
        return self._session.room_id if self._session else None

    def is_current(self, session: RoomSession) -> bool:
        return session is self._session and not session.closed

    async def open(self, room_id: str) -> RoomSession:
        """Enter a room.

        Raises:
            TransientFetchError: The backfill failed. The room is left
                closed with its unread count and watermark as they were;
                call open() again to retry.
        """
        await self.close()

        previous = self._counter.capture_read(room_id)
        self._counter.mark_read(room_id)
        self._counter.set_active_room(room_id)

        presence = PresenceTracker(
            self._data,
            room_id,
            self._user_id,
            self._display_name,
            ttl=self._typing_ttl,
            clock=self._presence_clock,
        )
        session = RoomSession(room_id, next(self._generations), presence)
        session.feed = MessageFeedReconciler(
            self._data,
            room_id,
            profiles=self._profiles,
            backfill_limit=self._backfill_limit,
            on_message=lambda message: self._on_message(session, message),
        )
        self._session = session
        logger.info(f"[Session] Opening room {room_id} (generation {session.generation})")

        await presence.open()
        if not self.is_current(session):
            await session.close()
            return session

        try:
            await session.feed.open()
        except TransientFetchError:
            logger.warning(f"[Session] Room {room_id} failed to load; left closed")
            if self._session is session:
                self._session = None
                if self._counter.active_room == room_id:
                    self._counter.set_active_room(None)
                # The messages were never shown; keep the badge and watermark.
                self._counter.restore_read(room_id, previous)
            await session.close()
            raise

        return session

    async def close(self) -> None:
        """Leave the current room, if any. Idempotent."""
        session, self._session = self._session, None
        if session is None:
            return
        if self._counter.active_room == session.room_id:
            self._counter.set_active_room(None)
        self._counter.mark_read(session.room_id)
        await session.close()
        logger.info(f"[Session] Closed room {session.room_id} (generation {session.generation})")

    async def signal_typing(self) -> bool:
        if self._session is None:
            return False
        return await self._session.presence.signal_typing()

    async def send_message(self, body: str) -> Message:
        """Post a message to the open room.

        The message reaches the feed through the live stream like any other.

        Raises:
            ValueError: Empty message or no open room.
        """
        text = (body or "").strip()
        if not text:
            raise ValueError("Message content cannot be empty")
        if self._session is None:
            raise ValueError("No room is open")
        return await self._data.insert_message(self._session.room_id, self._user_id, text)

    async def retry_subscription(self) -> bool:
        """Re-establish a stale live stream for the open room."""
        if self._session is None or self._session.feed is None:
            return False
        return await self._session.feed.retry_subscription()

    def _on_message(self, session: RoomSession, message: Message) -> None:
        if not self.is_current(session):
            return
        session.presence.message_landed(message.user_id)
