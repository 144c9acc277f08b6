"""Unread tracking: durable watermarks and live per-room counts."""

from .counter import ReadState, UnreadCounter, badge_label
from .store import WatermarkStore

__all__ = [
    "ReadState",
    "UnreadCounter",
    "WatermarkStore",
    "badge_label",
]
