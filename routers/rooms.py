from fastapi import APIRouter, Body, Depends, HTTPException, Request
from typing import Optional

from errors import RoomNotFound, StoreUnavailable
from logging_config import get_logger
from routers.common import room_id_param, store_unavailable, with_store_retry
from schemas.rooms import CreateRoomRequest, RoomResponse, SuccessResponse, TTLResponse
from services.core import ChatCore, get_core

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/room", tags=["room"])


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _room_response(core: ChatCore, room_id: Optional[str]) -> RoomResponse:
    room = await with_store_retry("create_or_get_room", lambda: core.rooms.create_or_get_room(room_id))
    return RoomResponse.from_room(room, room.remaining(core.rooms.clock()))


@rooms_router.post("/create", response_model=RoomResponse)
async def create_room(request: Request, body: Optional[CreateRoomRequest] = Body(default=None),
                      core: ChatCore = Depends(get_core)):
    # { "roomId": "optional-id" }
    # Response 200: { "room_id": "7hd92f", "created_at": "...", "expires_at": "...", "ttl": 600 }
    room_id = body.room_id if body else None
    logger.info(f"Room creation request from {client_host(request)}, room_id: {room_id}")
    return await _room_response(core, room_id)


@rooms_router.get("", response_model=RoomResponse)
async def get_or_create_room(request: Request, room_id: str = Depends(room_id_param),
                             core: ChatCore = Depends(get_core)):
    """
    Idempotent get-or-create used when a viewer opens a room link.
    A live room is returned unchanged; its TTL is never reset.
    """
    logger.info(f"Room lookup for {room_id} from {client_host(request)}")
    return await _room_response(core, room_id)


@rooms_router.get("/ttl", response_model=TTLResponse)
async def get_room_ttl(room_id: str = Depends(room_id_param), core: ChatCore = Depends(get_core)):
    try:
        remaining = await with_store_retry("get_remaining_ttl", lambda: core.rooms.get_remaining_ttl(room_id))
    except RoomNotFound:
        logger.warning(f"TTL request failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return TTLResponse(ttl=int(remaining))


@rooms_router.delete("", response_model=SuccessResponse)
async def destroy_room(request: Request, room_id: str = Depends(room_id_param),
                       core: ChatCore = Depends(get_core)):
    # Any occupant may destroy the room; viewers get chat.destroy
    logger.info(f"Destroy room request for {room_id} from {client_host(request)}")
    try:
        await core.rooms.destroy_room(room_id)
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except StoreUnavailable as e:
        raise store_unavailable("destroy_room", e)
    logger.info(f"Room {room_id} destroyed by {client_host(request)}")
    return SuccessResponse()
