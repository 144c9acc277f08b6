"""Chat rooms: feed reconciliation, typing presence and room sessions."""

from .feed import FeedState, MessageFeedReconciler, merge_message, remove_message
from .presence import PresenceTracker, TypingUser, describe_typing
from .profiles import ProfileDirectory
from .session import RoomSession, RoomSessionController

__all__ = [
    "FeedState",
    "MessageFeedReconciler",
    "PresenceTracker",
    "ProfileDirectory",
    "RoomSession",
    "RoomSessionController",
    "TypingUser",
    "describe_typing",
    "merge_message",
    "remove_message",
]
