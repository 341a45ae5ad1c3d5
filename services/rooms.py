import time
import uuid
from typing import Callable, Optional

from pydantic import ValidationError

from backend import ExpiringStore
from constants import ROOM_TTL_SECONDS
from errors import RoomNotFound
from logging_config import get_logger
from redis_keys import REDIS_EXPIRY_INDEX, REDIS_META_KEY, room_keys
from schemas.rooms import Room
from services.broadcaster import DESTROY_PAYLOAD, Broadcaster, EventKind

logger = get_logger(__name__)


class RoomRegistry:
    """Creates rooms, reports their remaining lifetime and tears them down.

    A room lives under ``room:meta:{id}`` with a store TTL equal to its lifetime and
    is listed in the ``rooms:expiry`` index scored by its expiry time. Removing the
    room from that index is the single live -> destroyed transition: whoever removes
    it publishes the ``destroy`` event, everybody else is a no-op.
    """

    def __init__(
        self,
        store: ExpiringStore,
        broadcaster: Broadcaster,
        ttl_seconds: int = ROOM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    async def create_or_get_room(self, room_id: Optional[str] = None) -> Room:
        room_id = room_id or uuid.uuid4().hex
        while True:
            room = await self._load(room_id)
            if room is not None and room.remaining(self.clock()) > 0:
                logger.debug(f"Room {room_id} already live")
                return room

            # Finish off any previous lifetime before starting a new one
            await self._retire(room_id, room)

            room = Room(room_id=room_id, created_at=self.clock(), ttl_seconds=self.ttl_seconds)
            created = await self.store.set(
                REDIS_META_KEY.format(slug=room_id),
                self.meta_record(room),
                ttl=self.ttl_seconds,
                only_if_absent=True,
            )
            if created:
                await self.store.index_add(REDIS_EXPIRY_INDEX, room_id, room.expires_at)
                logger.info(f"Room {room_id} created with TTL {self.ttl_seconds} seconds")
                return room
            # Another caller created it between our read and write; use theirs
            logger.debug(f"Room {room_id} created concurrently, re-reading")

    async def get_room(self, room_id: str) -> Room:
        room = await self._load(room_id)
        if room is None or room.remaining(self.clock()) <= 0:
            await self._retire(room_id, room)
            raise RoomNotFound(room_id)
        return room

    async def is_live(self, room_id: str) -> bool:
        return await self.current_lifetime(room_id) is not None

    async def current_lifetime(self, room_id: str) -> Optional[Room]:
        """The live room, or None. Compare ``created_at`` to tell lifetimes of one id apart."""
        room = await self._load(room_id)
        if room is None or room.remaining(self.clock()) <= 0:
            return None
        return room

    async def get_remaining_ttl(self, room_id: str) -> float:
        room = await self.get_room(room_id)
        return room.remaining(self.clock())

    async def destroy_room(self, room_id: str) -> None:
        room = await self._load(room_id)
        if room is None or room.remaining(self.clock()) <= 0:
            await self._retire(room_id, room)
            logger.warning(f"Destroy room failed: Room {room_id} not found")
            raise RoomNotFound(room_id)
        if not await self._teardown(room_id, reason="destroyed"):
            # Lost the race against a concurrent destroy or the expiry sweep
            logger.warning(f"Destroy room {room_id} lost to a concurrent teardown")
            raise RoomNotFound(room_id)

    async def expire_room(self, room_id: str) -> bool:
        """Tear down ``room_id`` if its lifetime is over. Used by the expiry sweeper."""
        return await self._retire(room_id, None)

    @staticmethod
    def meta_record(room: Room) -> str:
        return room.model_dump_json()

    async def _load(self, room_id: str) -> Optional[Room]:
        raw = await self.store.get(REDIS_META_KEY.format(slug=room_id))
        if raw is None:
            return None
        try:
            return Room.model_validate_json(raw)
        except ValidationError as e:
            # Nothing can recreate the room while the record sits there
            logger.error(f"Corrupt room record for {room_id}, deleting it: {e}")
            await self.store.delete(REDIS_META_KEY.format(slug=room_id))
            return None

    async def _teardown(self, room_id: str, reason: str) -> bool:
        claimed = await self.store.index_remove(REDIS_EXPIRY_INDEX, room_id)
        deleted = await self.store.delete(*room_keys(room_id))
        if not claimed:
            return False
        logger.info(f"Room {room_id} {reason}: deleted {deleted} keys")
        await self.broadcaster.publish(room_id, EventKind.DESTROY, dict(DESTROY_PAYLOAD))
        return True

    async def _retire(self, room_id: str, room: Optional[Room]) -> bool:
        """Announce the end of a lifetime that ran out without being swept yet."""
        if room is not None:
            return await self._teardown(room_id, reason="expired")
        # Only act if the index says the lifetime is over
        expires_at = await self.store.index_score(REDIS_EXPIRY_INDEX, room_id)
        if expires_at is None or expires_at > self.clock():
            return False
        return await self._teardown(room_id, reason="expired")
