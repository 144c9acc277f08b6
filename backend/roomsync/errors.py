"""Error taxonomy for the realtime sync engine.

Every error is recovered at the component boundary that raises it; none is
allowed to escape into the event loop.

    TransientFetchError   - a backfill or count query failed (retryable)
    SubscriptionLostError - a live stream could not be established or dropped
    PersistenceError      - a watermark write/read failed
    MalformedEventError   - an event payload is missing expected fields
"""


class RoomSyncError(Exception):
    """Base exception for sync engine errors."""
    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class TransientFetchError(RoomSyncError):
    """Raised when a query against the data service fails."""
    def __init__(self, message: str, room_id: str = ""):
        self.room_id = room_id
        super().__init__(message, retryable=True)


class SubscriptionLostError(RoomSyncError):
    """Raised when a live subscription cannot be established."""
    def __init__(self, message: str, topic: str = ""):
        self.topic = topic
        super().__init__(message, retryable=True)


class PersistenceError(RoomSyncError):
    """Raised when the local watermark store fails."""


class MalformedEventError(RoomSyncError):
    """Raised when an event payload cannot be parsed."""
    def __init__(self, message: str, payload: object = None):
        self.payload = payload
        super().__init__(f"Malformed event: {message}")
