"""Pydantic schemas for the unread REST API."""
from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field


class UnreadCounts(BaseModel):
    """Per-room unread counts and their derived total."""
    counts: Dict[str, int] = Field(default_factory=dict)
    total: int = 0


class RoomSummary(BaseModel):
    """A room as listed on the rooms page, with its unread badge."""
    id: str
    name: str
    description: str = ""
    unreadCount: int = 0
    badge: str = ""


class RoomList(BaseModel):
    rooms: List[RoomSummary]
    totalUnread: int = 0


class MarkReadResponse(BaseModel):
    roomId: str
    readAt: datetime
