"""Unread tracking REST API router.

Endpoints:
    GET  /rooms                 - Rooms with unread badges
    GET  /unread                - Per-room counts and total
    POST /unread/refresh        - Recompute all counts from the backend
    POST /rooms/{room_id}/read  - Mark a room read now
"""
import logging

from fastapi import APIRouter, HTTPException

from roomsync.engine import SyncEngine, get_engine
from roomsync.errors import TransientFetchError

from .counter import badge_label
from .schemas import MarkReadResponse, RoomList, RoomSummary, UnreadCounts

logger = logging.getLogger(__name__)

router = APIRouter(tags=["unread"])


def _engine() -> SyncEngine:
    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return engine


def _counts(engine: SyncEngine) -> UnreadCounts:
    return UnreadCounts(counts=engine.counter.counts, total=engine.counter.total)


@router.get("/rooms", response_model=RoomList)
async def list_rooms() -> RoomList:
    """List rooms in creation order with their unread counts.

    Returns:
        RoomList; 503 if the room query fails (UI shows loading-failed).
    """
    engine = _engine()
    try:
        rooms = await engine.data.list_rooms()
    except TransientFetchError as e:
        raise HTTPException(status_code=503, detail=e.message)

    summaries = []
    for room in rooms:
        count = engine.counter.count_for(room.id)
        summaries.append(RoomSummary(
            id=room.id,
            name=room.name,
            description=room.description,
            unreadCount=count,
            badge=badge_label(count),
        ))
    return RoomList(rooms=summaries, totalUnread=engine.counter.total)


@router.get("/unread", response_model=UnreadCounts)
async def get_unread() -> UnreadCounts:
    """Return the cached counts (last-known values on backend failure)."""
    return _counts(_engine())


@router.post("/unread/refresh", response_model=UnreadCounts)
async def refresh_unread() -> UnreadCounts:
    """Rebuild every room's count from watermarks and message history."""
    engine = _engine()
    await engine.counter.refresh_all()
    return _counts(engine)


@router.post("/rooms/{room_id}/read", response_model=MarkReadResponse)
async def mark_room_read(room_id: str) -> MarkReadResponse:
    """Zero a room's count and stamp its watermark with the current time."""
    read_at = _engine().counter.mark_read(room_id)
    logger.info(f"[Unread] Room {room_id} marked read at {read_at.isoformat()}")
    return MarkReadResponse(roomId=room_id, readAt=read_at)
