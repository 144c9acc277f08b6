"""External data service interface and the in-memory backend."""

from .base import BroadcastChannel, DataService, Subscription
from .memory import InMemoryDataService
from .schemas import MESSAGES_TABLE, ChangeEvent, EventType, Message, Room, TypingSignal

__all__ = [
    "BroadcastChannel",
    "ChangeEvent",
    "DataService",
    "EventType",
    "InMemoryDataService",
    "MESSAGES_TABLE",
    "Message",
    "Room",
    "Subscription",
    "TypingSignal",
]
