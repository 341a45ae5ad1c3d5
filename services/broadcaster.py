import enum
from typing import Iterable, List, Optional, Set

from pydantic import ValidationError

from backend import ChannelFeed, PubSub
from errors import BroadcastUnavailable, InvalidInput
from logging_config import get_logger
from redis_keys import REDIS_ROOM_CHANNEL
from schemas.realtime import RealtimeEvent

logger = get_logger(__name__)

EVENT_PREFIX = "chat."
DESTROY_PAYLOAD = {"isDestroyed": True}


class EventKind(str, enum.Enum):
    MESSAGE = "message"
    TYPING = "typing"
    DESTROY = "destroy"

    @property
    def wire_name(self) -> str:
        return EVENT_PREFIX + self.value

    @classmethod
    def from_wire(cls, name: str) -> "EventKind":
        """Accepts both ``chat.message`` and ``message``."""
        if name.startswith(EVENT_PREFIX):
            name = name[len(EVENT_PREFIX):]
        return cls(name)


class SubscriptionState(str, enum.Enum):
    OPEN = "open"
    DELIVERING = "delivering"
    CLOSED = "closed"


def room_channel(room_id: str) -> str:
    return REDIS_ROOM_CHANNEL.format(slug=room_id)


class Subscription:
    """One viewer's live feed over a set of room topics.

    Iterating yields :class:`RealtimeEvent` in publish order. The feed closes when
    the caller closes it, or right after the ``destroy`` event of the last room it
    still follows has been handed out.
    """

    def __init__(self, feed: ChannelFeed, room_ids: List[str], kinds: Set[EventKind]):
        self.feed = feed
        self.room_ids = list(room_ids)
        self.kinds = kinds
        self.state = SubscriptionState.OPEN
        self._live_rooms = set(room_ids)
        self._close_pending = False

    @property
    def closed(self) -> bool:
        return self.state is SubscriptionState.CLOSED

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RealtimeEvent:
        while True:
            if self._close_pending:
                await self.close()
            if self.closed:
                raise StopAsyncIteration
            try:
                channel, raw = await self.feed.__anext__()
            except StopAsyncIteration:
                await self.close()
                raise
            event = self._decode(channel, raw)
            if event is None:
                continue
            kind = EventKind.from_wire(event.event)
            if kind is EventKind.DESTROY:
                self._live_rooms.discard(event.channel)
                if not self._live_rooms:
                    self._close_pending = True
            if kind not in self.kinds:
                continue
            self.state = SubscriptionState.DELIVERING
            return event

    def _decode(self, channel: str, raw: str) -> Optional[RealtimeEvent]:
        try:
            event = RealtimeEvent.model_validate_json(raw)
            EventKind.from_wire(event.event)
        except (ValidationError, ValueError) as e:
            logger.error(f"Dropping malformed frame on {channel}: {e}")
            return None
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.state = SubscriptionState.CLOSED
        await self.feed.aclose()
        logger.info(f"Subscription to rooms {self.room_ids} closed")

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class Broadcaster:
    """Per-room topics carrying ``message``, ``typing`` and ``destroy`` events."""

    def __init__(self, bus: PubSub):
        self.bus = bus

    async def publish(self, room_id: str, kind: EventKind, payload: dict) -> bool:
        event = RealtimeEvent(event=kind.wire_name, channel=room_id, data=payload)
        try:
            receivers = await self.bus.publish(room_channel(room_id), event.model_dump_json())
        except BroadcastUnavailable as e:
            # The store stays the source of truth; viewers reconcile on reconnect
            logger.error(f"Failed to publish {kind.wire_name} for room {room_id}: {e}")
            return False
        logger.debug(f"Published {kind.wire_name} to room {room_id} ({receivers} receivers)")
        return True

    async def subscribe(self, room_ids: Iterable[str], kinds: Optional[Iterable[EventKind]] = None) -> Subscription:
        room_ids = list(dict.fromkeys(room_ids))
        if not room_ids:
            raise ValueError("subscribe needs at least one room")
        wanted = set(kinds) if kinds is not None else set(EventKind)
        feed = await self.bus.subscribe([room_channel(room_id) for room_id in room_ids])
        logger.info(f"Subscription opened for rooms {room_ids}, events {sorted(k.value for k in wanted)}")
        return Subscription(feed, room_ids, wanted)


def parse_event_kinds(value: Optional[str]) -> Optional[List[EventKind]]:
    """Parse a comma separated ``events`` query value. Empty means all kinds."""
    if not value:
        return None
    try:
        return [EventKind.from_wire(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise InvalidInput(f"Unknown event in {value!r}") from e
