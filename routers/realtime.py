import asyncio
import json
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from errors import BroadcastUnavailable, InvalidInput, RoomNotFound
from logging_config import get_logger
from routers.common import room_id_param, with_store_retry
from schemas.realtime import TypingRequest
from schemas.rooms import SuccessResponse
from services.broadcaster import Subscription, parse_event_kinds
from services.core import ChatCore, get_core

logger = get_logger(__name__)

realtime_router = APIRouter(prefix="/realtime", tags=["realtime"])


@realtime_router.post("/typing", response_model=SuccessResponse)
async def set_typing(payload: TypingRequest, room_id: str = Depends(room_id_param),
                     core: ChatCore = Depends(get_core)):
    await with_store_retry(
        "set_typing", lambda: core.typing.set_typing(room_id, payload.sender, payload.is_typing)
    )
    return SuccessResponse()


@realtime_router.get("/typing")
async def get_typing(room_id: str = Depends(room_id_param), core: ChatCore = Depends(get_core)):
    """Senders currently typing, for viewers reconciling after a (re)connect."""
    try:
        await with_store_retry("get_room", lambda: core.rooms.get_room(room_id))
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    senders = await with_store_retry("typing_senders", lambda: core.typing.typing_senders(room_id))
    return {"typing": senders}


async def _forward_events(websocket: WebSocket, subscription: Subscription, connection_id: str) -> None:
    sent = 0
    async for event in subscription:
        await websocket.send_text(event.model_dump_json())
        sent += 1
        logger.debug(f"Sent {event.event} #{sent} to connection {connection_id}")


async def _drain_client(websocket: WebSocket, connection_id: str) -> None:
    # Viewers only listen; anything they send is ignored until they disconnect
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
            return


@realtime_router.websocket("")
async def realtime_feed(websocket: WebSocket, channels: str = Query(...), events: Optional[str] = Query(None),
                        core: ChatCore = Depends(get_core)):
    """Live feed of chat.message / chat.typing / chat.destroy for the given rooms.

    Query parameters:
    - channels: comma separated room ids
    - events: optional comma separated event names (default: all)
    """
    room_ids = [room_id.strip() for room_id in channels.split(",") if room_id.strip()]
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection attempt {connection_id} for rooms: {room_ids}")

    try:
        if not room_ids:
            raise InvalidInput(f"No room ids in channels {channels!r}")
        kinds = parse_event_kinds(events)
    except InvalidInput as e:
        logger.info(f"WebSocket connection rejected: {e}")
        await websocket.close(code=1008, reason="Invalid payload")
        return

    await websocket.accept()
    try:
        subscription = await core.broadcaster.subscribe(room_ids, kinds)
    except BroadcastUnavailable as e:
        logger.error(f"WebSocket {connection_id}: cannot subscribe to {room_ids}: {e}")
        await websocket.close(code=1011, reason="Realtime unavailable")
        return

    async with subscription:
        welcome_msg = {
            "type": "system",
            "message": "Connected to room",
            "channels": room_ids,
            "connection_id": connection_id,
            "timestamp": datetime.now().isoformat(),
        }
        await websocket.send_text(json.dumps(welcome_msg))

        forward = asyncio.create_task(_forward_events(websocket, subscription, connection_id))
        drain = asyncio.create_task(_drain_client(websocket, connection_id))
        try:
            done, _ = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            forward.cancel()
            drain.cancel()
        for task in done:
            if task.exception() is not None and not isinstance(task.exception(), WebSocketDisconnect):
                logger.error(f"WebSocket error for connection {connection_id}: {task.exception()}",
                             exc_info=task.exception())

    if forward in done and not isinstance(forward.exception(), WebSocketDisconnect):
        # The client is still connected; either every room was destroyed or the feed broke
        if forward.exception() is None:
            logger.info(f"Closing WebSocket {connection_id}: rooms {room_ids} destroyed")
            code, reason = 1000, None
        else:
            logger.warning(f"Closing WebSocket {connection_id}: realtime feed for {room_ids} failed")
            code, reason = 1011, "Realtime unavailable"
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"Error closing WebSocket: {e}")
