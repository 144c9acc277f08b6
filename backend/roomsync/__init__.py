"""roomsync: realtime feed synchronization and unread tracking for chat rooms."""

__version__ = "0.1.0"
