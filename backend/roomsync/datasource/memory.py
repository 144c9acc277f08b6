"""In-memory DataService used for local runs and tests.

Behaves like the hosted backend in the ways the engine depends on:
    - inserts are committed before their change event is delivered
    - subscriptions filter by table and optionally by room
    - broadcast topics deliver to every member except the sender
    - nothing is replayed to late subscribers

Extra hooks exist for tests: ``publish`` injects raw change events
(duplicates, malformed payloads) and ``fail_next`` makes the next call(s)
of an operation fail.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from roomsync.errors import SubscriptionLostError, TransientFetchError

from .base import BroadcastChannel, BroadcastHandler, ChangeHandler, DataService, Subscription
from .schemas import MESSAGES_TABLE, ChangeEvent, EventType, Message, Room

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _MemorySubscription(Subscription):

    def __init__(self, service: "InMemoryDataService", table: str,
                 handler: ChangeHandler, room_id: Optional[str]) -> None:
        self.table = table
        self.handler = handler
        self.room_id = room_id
        self.closed = False
        self._service = service

    def matches(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        return self.room_id is None or event.room_id() == self.room_id

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._service._drop_subscription(self)


class _MemoryChannel(BroadcastChannel):

    def __init__(self, service: "InMemoryDataService", topic: str,
                 handler: BroadcastHandler) -> None:
        self.topic = topic
        self.handler = handler
        self.closed = False
        self._service = service

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        await self._service._broadcast(self, event, payload)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._service._drop_channel(self)


class InMemoryDataService(DataService):
    """Process-local stand-in for the hosted data backend.

    Args:
        clock: Returns the creation timestamp for inserted messages.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self.rooms: Dict[str, Room] = {}
        self.messages: List[Message] = []
        self.profiles: Dict[str, str] = {}
        self.sent_broadcasts: List[Dict[str, Any]] = []
        self._subscriptions: List[_MemorySubscription] = []
        self._channels: Dict[str, List[_MemoryChannel]] = defaultdict(list)
        self._failures: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Seeding & test hooks
    # ------------------------------------------------------------------

    def add_room(self, room_id: str, name: str = "", description: str = "",
                 created_at: Optional[datetime] = None) -> Room:
        room = Room(id=room_id, name=name or room_id, description=description,
                    created_at=created_at or self._clock())
        self.rooms[room_id] = room
        return room

    def set_profile(self, user_id: str, name: str) -> None:
        self.profiles[user_id] = name

    def seed_message(self, room_id: str, user_id: str, body: str,
                     created_at: datetime, message_id: Optional[str] = None) -> Message:
        """Store a message without delivering a change event (history)."""
        message = Message(
            id=message_id or str(uuid.uuid4()),
            room_id=room_id,
            user_id=user_id,
            body=body,
            created_at=created_at,
        )
        self.messages.append(message)
        return message

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` fail."""
        self._failures[operation] = self._failures.get(operation, 0) + times

    def _maybe_fail(self, operation: str) -> bool:
        remaining = self._failures.get(operation, 0)
        if remaining <= 0:
            return False
        self._failures[operation] = remaining - 1
        return True

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver a change event to every matching subscription."""
        for sub in list(self._subscriptions):
            if not sub.matches(event):
                continue
            try:
                await sub.handler(event)
            except Exception as e:
                logger.error(f"[Memory] Subscriber failed on {event.type.value} {event.table}: {e}")

    async def delete_message(self, message_id: str) -> bool:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                del self.messages[index]
                await self.publish(ChangeEvent(
                    type=EventType.DELETE,
                    table=MESSAGES_TABLE,
                    old={"id": message.id, "room_id": message.room_id},
                ))
                return True
        return False

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def channel_count(self, topic: str) -> int:
        return len(self._channels.get(topic, []))

    # ------------------------------------------------------------------
    # DataService
    # ------------------------------------------------------------------

    async def fetch_messages(self, room_id: str, limit: int) -> List[Message]:
        if self._maybe_fail("fetch_messages"):
            raise TransientFetchError(f"backfill query failed for room {room_id}", room_id=room_id)
        in_room = [m for m in self.messages if m.room_id == room_id]
        in_room.sort(key=lambda m: m.created_at)
        return in_room[-limit:] if limit > 0 else []

    async def list_message_ids(self, room_id: str, exclude_user_id: str,
                               after: Optional[datetime] = None) -> List[str]:
        if self._maybe_fail("list_message_ids"):
            raise TransientFetchError(f"count query failed for room {room_id}", room_id=room_id)
        return [
            m.id for m in self.messages
            if m.room_id == room_id
            and m.user_id != exclude_user_id
            and (after is None or m.created_at > after)
        ]

    async def fetch_profile_name(self, user_id: str) -> Optional[str]:
        if self._maybe_fail("fetch_profile_name"):
            raise TransientFetchError(f"profile query failed for user {user_id}")
        return self.profiles.get(user_id)

    async def insert_message(self, room_id: str, user_id: str, body: str) -> Message:
        if self._maybe_fail("insert_message"):
            raise TransientFetchError(f"insert failed for room {room_id}", room_id=room_id)
        message = Message(
            id=str(uuid.uuid4()),
            room_id=room_id,
            user_id=user_id,
            body=body,
            created_at=self._clock(),
        )
        self.messages.append(message)
        await self.publish(ChangeEvent(
            type=EventType.INSERT,
            table=MESSAGES_TABLE,
            new=message.to_record(),
        ))
        return message

    async def list_rooms(self) -> List[Room]:
        if self._maybe_fail("list_rooms"):
            raise TransientFetchError("room list query failed")
        return sorted(self.rooms.values(), key=lambda r: r.created_at)

    async def subscribe(self, table: str, handler: ChangeHandler,
                        room_id: Optional[str] = None) -> Subscription:
        topic = f"{table}:{room_id}" if room_id else table
        if self._maybe_fail("subscribe"):
            raise SubscriptionLostError(f"could not subscribe to {topic}", topic=topic)
        sub = _MemorySubscription(self, table, handler, room_id)
        self._subscriptions.append(sub)
        logger.debug(f"[Memory] Subscribed to {topic}")
        return sub

    async def join_broadcast(self, topic: str, handler: BroadcastHandler) -> BroadcastChannel:
        if self._maybe_fail("join_broadcast"):
            raise SubscriptionLostError(f"could not join broadcast {topic}", topic=topic)
        channel = _MemoryChannel(self, topic, handler)
        self._channels[topic].append(channel)
        return channel

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _drop_subscription(self, sub: _MemorySubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _drop_channel(self, channel: _MemoryChannel) -> None:
        members = self._channels.get(channel.topic, [])
        if channel in members:
            members.remove(channel)
        if not members:
            self._channels.pop(channel.topic, None)

    async def _broadcast(self, sender: _MemoryChannel, event: str,
                         payload: Dict[str, Any]) -> None:
        self.sent_broadcasts.append({"topic": sender.topic, "event": event, "payload": payload})
        for member in list(self._channels.get(sender.topic, [])):
            if member is sender or member.closed:
                continue
            try:
                await member.handler(event, payload)
            except Exception as e:
                logger.error(f"[Memory] Broadcast member failed on {sender.topic}: {e}")
