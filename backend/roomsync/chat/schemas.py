"""Pydantic schemas for frames pushed to the presentation layer.

The WebSocket surface sends two kinds of frames:
    - feed:   the full reconciled feed of the open room
    - typing: the current typing set and its rendered label

Field names are camelCase to match what the UI consumes.
"""
from datetime import datetime
from typing import Iterable, List

from pydantic import BaseModel, Field

from roomsync.datasource.schemas import Message

from .presence import TypingUser, describe_typing
from .profiles import ProfileDirectory


class FeedEntry(BaseModel):
    """One message as rendered in the feed.

    Attributes:
        id: Message id.
        roomId: Room the message belongs to.
        userId: Author id.
        senderName: Author display name ("Unknown" until resolved).
        content: Message text.
        createdAt: Creation time (UTC).
        isOwn: Whether the signed-in user wrote it.
    """
    id: str
    roomId: str
    userId: str
    senderName: str = Field(default="", description="Author display name")
    content: str
    createdAt: datetime
    isOwn: bool = False


class TypingEntry(BaseModel):
    userId: str
    name: str


class FeedFrame(BaseModel):
    type: str = "feed"
    roomId: str
    messages: List[FeedEntry]
    stale: bool = False


class TypingFrame(BaseModel):
    type: str = "typing"
    roomId: str
    users: List[TypingEntry]
    label: str = ""


class MessageInput(BaseModel):
    """Frame sent by the UI to post a message."""
    content: str = Field(..., description="Message content")


def to_feed_entry(message: Message, profiles: ProfileDirectory, self_id: str) -> FeedEntry:
    return FeedEntry(
        id=message.id,
        roomId=message.room_id,
        userId=message.user_id,
        senderName=profiles.name_for(message.user_id),
        content=message.body,
        createdAt=message.created_at,
        isOwn=message.user_id == self_id,
    )


def build_feed_frame(room_id: str, messages: Iterable[Message], profiles: ProfileDirectory,
                     self_id: str, stale: bool = False) -> FeedFrame:
    return FeedFrame(
        roomId=room_id,
        messages=[to_feed_entry(m, profiles, self_id) for m in messages],
        stale=stale,
    )


def build_typing_frame(room_id: str, users: Iterable[TypingUser]) -> TypingFrame:
    users = sorted(users, key=lambda u: (u.name, u.user_id))
    return TypingFrame(
        roomId=room_id,
        users=[TypingEntry(userId=u.user_id, name=u.name) for u in users],
        label=describe_typing(users),
    )
