import time
from typing import Callable, List

from pydantic import ValidationError

from backend import ExpiringStore
from errors import RoomNotFound
from logging_config import get_logger
from redis_keys import REDIS_MESSAGES_KEY, REDIS_META_KEY, REDIS_SEQ_KEY
from schemas.messages import Message
from services.broadcaster import Broadcaster, EventKind
from services.rooms import RoomRegistry

logger = get_logger(__name__)


class MessageLog:
    """Append-only, per-room message history that never outlives its room.

    Ids and timestamps are handed out by the store in the same atomic step that
    appends the record, so ``(timestamp, id)`` always agrees with append order.
    """

    def __init__(
        self,
        store: ExpiringStore,
        registry: RoomRegistry,
        broadcaster: Broadcaster,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster
        self.clock = clock

    async def append(self, room_id: str, sender: str, text: str) -> Message:
        room = await self.registry.get_room(room_id)
        now = self.clock()
        # Message keys expire together with the room
        raw = await self.store.list_append_sequenced(
            REDIS_MESSAGES_KEY.format(slug=room_id),
            REDIS_SEQ_KEY.format(slug=room_id),
            guard_key=REDIS_META_KEY.format(slug=room_id),
            guard_value=RoomRegistry.meta_record(room),
            record={"sender": sender, "text": text, "roomId": room_id},
            now_ms=int(now * 1000),
            ttl=room.remaining(now),
        )
        if raw is None:
            logger.warning(f"Room {room_id} ended before message from {sender} was stored")
            raise RoomNotFound(room_id)
        message = Message.model_validate_json(raw)

        current = await self.registry.current_lifetime(room_id)
        if current is None or current.created_at != room.created_at:
            # Torn down right after the write; the message went with its lifetime
            logger.warning(f"Room {room_id} destroyed during append, not publishing message {message.id}")
            raise RoomNotFound(room_id)

        logger.debug(f"Stored message {message.id} from {sender} in room {room_id}")
        await self.broadcaster.publish(room_id, EventKind.MESSAGE, message.to_payload())
        return message

    async def list(self, room_id: str) -> List[Message]:
        await self.registry.get_room(room_id)
        raw_messages = await self.store.list_range(REDIS_MESSAGES_KEY.format(slug=room_id))
        messages = []
        for raw in raw_messages:
            try:
                messages.append(Message.model_validate_json(raw))
            except ValidationError as e:
                logger.error(f"Skipping unreadable message in room {room_id}: {e}")
        messages.sort(key=lambda message: message.sort_key)
        logger.debug(f"Room {room_id} has {len(messages)} messages")
        return messages
