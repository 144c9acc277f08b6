"""Pydantic schemas for records exchanged with the external data service.

Records arrive as plain dicts (query rows or change-event payloads) and are
parsed into immutable models here. Anything that fails to parse is reported
as a MalformedEventError so the stream processor can drop it.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from roomsync.errors import MalformedEventError

MESSAGES_TABLE = "chat_messages"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Message(BaseModel):
    """A chat message as stored by the data service.

    Attributes:
        id: Server-assigned unique identifier.
        room_id: Room the message belongs to.
        user_id: Author of the message.
        body: Message text (``message`` column on the wire).
        created_at: Creation time (UTC). Not strictly increasing; ties happen.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    body: str = Field(default="", alias="message")
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalize_tz(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def from_record(cls, record: Optional[Dict[str, Any]]) -> "Message":
        """Parse a raw record, raising MalformedEventError on bad input."""
        if not isinstance(record, dict):
            raise MalformedEventError("record is not an object", payload=record)
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            raise MalformedEventError(str(e), payload=record) from e

    def to_record(self) -> Dict[str, Any]:
        """Serialize back to the wire shape."""
        return {
            "id": self.id,
            "room_id": self.room_id,
            "user_id": self.user_id,
            "message": self.body,
            "created_at": self.created_at.isoformat(),
        }


class Room(BaseModel):
    """A chat room listed by the data service."""
    id: str
    name: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventType(str, Enum):
    """Kind of change delivered by a table subscription."""
    INSERT = "INSERT"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row change delivered by a table subscription.

    Attributes:
        type: INSERT or DELETE.
        table: Table the change happened in.
        new: The inserted record (INSERT only).
        old: The removed record (DELETE only; may only carry ``id``).
    """
    type: EventType
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    def room_id(self) -> Optional[str]:
        record = self.new if self.type == EventType.INSERT else self.old
        if not record:
            return None
        return record.get("room_id")


class TypingSignal(BaseModel):
    """Ephemeral typing broadcast. Never persisted.

    Carries no timestamp: expiry counts from receipt, since sender clocks
    are not trusted.
    """
    room_id: str = ""
    user_id: str = Field(..., min_length=1)
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "TypingSignal":
        if not isinstance(payload, dict):
            raise MalformedEventError("typing payload is not an object", payload=payload)
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MalformedEventError(str(e), payload=payload) from e
