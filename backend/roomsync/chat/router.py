"""Chat router providing the realtime room WebSocket.

WebSocket /ws/rooms/{room_id}:
    On connect the room is opened for the signed-in user (marking it read),
    then the server pushes frames as state changes:
        - feed:   the reconciled message list
        - typing: who else is typing, with a rendered label
        - error:  a recoverable failure (e.g. backfill failed)

    The client may send:
        - {"type": "typing"}                      announce typing
        - {"type": "message", "content": "..."}   post a message
        - {"type": "resync"}                      retry a stale live stream

    Disconnecting closes the room (stamping its watermark) unless another
    connection has already opened a different room.
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from roomsync.engine import get_engine
from roomsync.errors import TransientFetchError

from .schemas import MessageInput, build_feed_frame, build_typing_frame

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/rooms/{room_id}")
async def room_websocket(websocket: WebSocket, room_id: str) -> None:
    """Stream one room's feed and typing presence to the UI."""
    await websocket.accept()

    engine = get_engine()
    if engine is None:
        await websocket.send_json({"type": "error", "error": "Engine not initialised"})
        await websocket.close(code=1011)
        return

    try:
        session = await engine.rooms.open(room_id)
    except TransientFetchError as e:
        await websocket.send_json({"type": "error", "error": e.message, "retryable": True})
        await websocket.close(code=1011)
        return

    feed = session.feed
    outbox: asyncio.Queue = asyncio.Queue()

    def _feed_frame(messages) -> dict:
        return build_feed_frame(
            room_id, messages, engine.profiles, engine.user_id, stale=feed.stale
        ).model_dump(mode="json")

    feed.add_listener(lambda messages: outbox.put_nowait(_feed_frame(messages)))
    session.presence.add_listener(
        lambda users: outbox.put_nowait(build_typing_frame(room_id, users).model_dump(mode="json"))
    )
    await websocket.send_json(_feed_frame(feed.messages))

    async def _pump() -> None:
        while True:
            frame = await outbox.get()
            await websocket.send_json(frame)

    sender = asyncio.create_task(_pump())
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "error": "Frame is not valid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "error": "Frame must be a JSON object"})
                continue
            frame_type = data.get("type", "message")

            if frame_type == "typing":
                await engine.rooms.signal_typing()
                continue

            if frame_type == "resync":
                live = await engine.rooms.retry_subscription()
                await websocket.send_json({"type": "resync", "live": live})
                continue

            if frame_type == "message":
                try:
                    body = MessageInput(**data)
                    await engine.rooms.send_message(body.content)
                except (ValueError, TransientFetchError) as e:
                    await websocket.send_json({"type": "error", "error": str(e)})
                continue

            logger.debug(f"[WS] Unknown frame type ignored: {frame_type}")
    except WebSocketDisconnect:
        logger.info(f"[WS] Client left room {room_id}")
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        if engine.rooms.is_current(session):
            await engine.rooms.close()
