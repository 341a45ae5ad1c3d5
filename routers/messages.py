from fastapi import APIRouter, Depends, HTTPException

from errors import RoomNotFound, StoreUnavailable
from logging_config import get_logger
from routers.common import room_id_param, store_unavailable, with_store_retry
from schemas.messages import MessageResponse, MessagesResponse, SendMessageRequest
from services.core import ChatCore, get_core

logger = get_logger(__name__)

messages_router = APIRouter(prefix="/messages", tags=["messages"])


@messages_router.get("", response_model=MessagesResponse)
async def list_messages(room_id: str = Depends(room_id_param), core: ChatCore = Depends(get_core)):
    try:
        messages = await with_store_retry("list_messages", lambda: core.messages.list(room_id))
    except RoomNotFound:
        logger.warning(f"List messages failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return MessagesResponse(messages=messages)


@messages_router.post("", response_model=MessageResponse, status_code=201)
async def send_message(payload: SendMessageRequest, room_id: str = Depends(room_id_param),
                       core: ChatCore = Depends(get_core)):
    # Not retried here: a write that failed after reaching the store would be duplicated
    try:
        message = await core.messages.append(room_id, payload.sender, payload.text)
    except RoomNotFound:
        logger.warning(f"Send message failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    except StoreUnavailable as e:
        raise store_unavailable("send_message", e)
    logger.info(f"Message {message.id} from {payload.sender} stored in room {room_id}")
    return MessageResponse(message=message)
