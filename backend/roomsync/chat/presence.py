"""Typing presence for one open room.

Typing signals travel over the room's ephemeral broadcast topic
(``typing:{room_id}``). Nothing is persisted; a fresh tracker starts empty.

Entry lifecycle:
    signal received   -> insert or refresh, deadline = now + TTL
    TTL elapsed       -> removed by its timer, or lazily on the next read
    author's message  -> removed immediately

Each user holds at most one entry; a newer signal moves the deadline rather
than stacking. Reads evict anything past its deadline, so a late or lost
timer never leaves a stale "is typing" behind.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from roomsync.datasource.base import BroadcastChannel, DataService
from roomsync.datasource.schemas import TypingSignal
from roomsync.errors import MalformedEventError, SubscriptionLostError

logger = logging.getLogger(__name__)

TYPING_EVENT = "user_typing"

# Seconds a typing signal stays visible; also the local re-send window
DEFAULT_TYPING_TTL = 3.0


@dataclass(frozen=True)
class TypingUser:
    user_id: str
    name: str


@dataclass(frozen=True)
class _TypingEntry:
    user: TypingUser
    expires_at: float


PresenceListener = Callable[[FrozenSet[TypingUser]], None]


def typing_topic(room_id: str) -> str:
    return f"typing:{room_id}"


def describe_typing(users: Iterable[TypingUser]) -> str:
    """Render the indicator line, e.g. "Ana, Bo are typing..."."""
    names = sorted(u.name or "Someone" for u in users)
    if not names:
        return ""
    verb = "is" if len(names) == 1 else "are"
    return f"{', '.join(names)} {verb} typing..."


class PresenceTracker:
    """Tracks who else is typing in a room and announces our own typing.

    Args:
        data_service: Provides the broadcast channel.
        room_id: Room to track.
        user_id: The signed-in user (own signals are ignored).
        display_name: Name sent with our typing signals.
        ttl: Seconds before an entry expires.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        data_service: DataService,
        room_id: str,
        user_id: str,
        display_name: str,
        ttl: float = DEFAULT_TYPING_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.room_id = room_id
        self._data = data_service
        self._user_id = user_id
        self._display_name = display_name
        self._ttl = ttl
        self._clock = clock

        self._entries: Dict[str, _TypingEntry] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._channel: Optional[BroadcastChannel] = None
        self._suppressed_until = float("-inf")
        self._listeners: List[PresenceListener] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> bool:
        """Join the room's typing topic. Returns False if unavailable."""
        try:
            self._channel = await self._data.join_broadcast(
                typing_topic(self.room_id), self._on_broadcast
            )
        except SubscriptionLostError as e:
            logger.warning(f"[Presence] Typing indicators off for room {self.room_id}: {e.message}")
            return False
        return True

    async def close(self) -> None:
        """Leave the topic and drop all entries. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries = {}
        self._listeners.clear()
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def signal_typing(self) -> bool:
        """Announce that we are typing, at most once per TTL window.

        Returns:
            True if a signal was sent, False if suppressed or unavailable.
        """
        if self._closed or self._channel is None:
            return False
        now = self._clock()
        if now < self._suppressed_until:
            return False
        self._suppressed_until = now + self._ttl
        try:
            await self._channel.send(TYPING_EVENT, {
                "user_id": self._user_id,
                "name": self._display_name,
                "room_id": self.room_id,
            })
        except SubscriptionLostError as e:
            logger.debug(f"[Presence] Typing signal dropped: {e.message}")
            return False
        return True

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def receive(self, signal: TypingSignal) -> None:
        """Insert or refresh another user's typing entry."""
        if self._closed or signal.user_id == self._user_id:
            return
        entry = _TypingEntry(
            user=TypingUser(user_id=signal.user_id, name=signal.name),
            expires_at=self._clock() + self._ttl,
        )
        self._entries = {**self._entries, signal.user_id: entry}
        self._schedule_expiry(signal.user_id, entry)
        self._emit()

    def message_landed(self, user_id: str) -> None:
        """The user's message arrived, so they are no longer typing."""
        if user_id not in self._entries:
            return
        self._drop([user_id])
        self._emit()

    def snapshot(self) -> FrozenSet[TypingUser]:
        """Current typing users, after evicting expired entries."""
        self._evict_expired()
        return frozenset(entry.user for entry in self._entries.values())

    def add_listener(self, listener: PresenceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _remove

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _on_broadcast(self, event: str, payload: dict) -> None:
        if self._closed or event != TYPING_EVENT:
            return
        try:
            signal = TypingSignal.from_payload(payload)
        except MalformedEventError as e:
            logger.warning(f"[Presence] Dropped typing signal: {e.message}")
            return
        if signal.room_id and signal.room_id != self.room_id:
            return
        self.receive(signal)

    def _schedule_expiry(self, user_id: str, entry: _TypingEntry) -> None:
        previous = self._timers.pop(user_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[user_id] = loop.call_later(self._ttl, self._expire, user_id, entry)

    def _expire(self, user_id: str, entry: _TypingEntry) -> None:
        # Only the timer of the latest signal may remove the entry.
        if self._entries.get(user_id) is not entry:
            return
        self._timers.pop(user_id, None)
        self._drop([user_id])
        self._emit()

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [uid for uid, entry in self._entries.items() if entry.expires_at <= now]
        if expired:
            self._drop(expired)
            self._emit()

    def _drop(self, user_ids: List[str]) -> None:
        for user_id in user_ids:
            handle = self._timers.pop(user_id, None)
            if handle is not None:
                handle.cancel()
        self._entries = {uid: e for uid, e in self._entries.items() if uid not in user_ids}

    def _emit(self) -> None:
        users = frozenset(entry.user for entry in self._entries.values())
        for listener in list(self._listeners):
            try:
                listener(users)
            except Exception as e:
                logger.error(f"[Presence] Listener failed: {e}")
