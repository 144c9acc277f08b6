"""DataService abstract interface for the external data backend.

The sync engine never talks to storage directly. It consumes this interface:
queries, one insert mutation, table change subscriptions and ephemeral
broadcast channels.

Usage:
    from roomsync.datasource import InMemoryDataService

    service = InMemoryDataService()
    sub = await service.subscribe("chat_messages", on_change, room_id="r1")
    ...
    await sub.close()
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .schemas import ChangeEvent, Message, Room

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
BroadcastHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Subscription(ABC):
    """Handle for a live table subscription."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery. Must be idempotent."""


class BroadcastChannel(ABC):
    """Handle for an ephemeral broadcast topic (no persistence, no replay)."""

    @abstractmethod
    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        """Fire-and-forget delivery to the other members of the topic."""

    @abstractmethod
    async def close(self) -> None:
        """Leave the topic. Must be idempotent."""


class DataService(ABC):
    """Abstract base class for data backends.

    Query methods raise TransientFetchError on failure; subscribe and
    join_broadcast raise SubscriptionLostError.
    """

    @abstractmethod
    async def fetch_messages(self, room_id: str, limit: int) -> List[Message]:
        """Return the most recent ``limit`` messages, ascending by created_at."""

    @abstractmethod
    async def list_message_ids(
        self,
        room_id: str,
        exclude_user_id: str,
        after: Optional[datetime] = None,
    ) -> List[str]:
        """Return ids of messages not authored by ``exclude_user_id``.

        When ``after`` is given only messages with created_at strictly
        greater than it are included. The length is the unread count; the
        ids tell the caller exactly which rows the query covered.
        """

    @abstractmethod
    async def fetch_profile_name(self, user_id: str) -> Optional[str]:
        """Return a display name for the user, or None if unknown."""

    @abstractmethod
    async def insert_message(self, room_id: str, user_id: str, body: str) -> Message:
        """Insert a message. The change event is delivered after commit."""

    @abstractmethod
    async def list_rooms(self) -> List[Room]:
        """Return all rooms ordered by created_at."""

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        room_id: Optional[str] = None,
    ) -> Subscription:
        """Subscribe to INSERT/DELETE changes, optionally filtered by room."""

    @abstractmethod
    async def join_broadcast(self, topic: str, handler: BroadcastHandler) -> BroadcastChannel:
        """Join an ephemeral broadcast topic."""
