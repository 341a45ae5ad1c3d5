import asyncio
import fnmatch
import json
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from backend import Backend, ChannelFeed
from constants import SUBSCRIBER_QUEUE_SIZE
from logging_config import get_logger
from redis_keys import MESSAGE_ID_FORMAT

logger = get_logger(__name__)


class MemoryChannelFeed(ChannelFeed):
    def __init__(self, backend: "MemoryBackend", channels: List[str], maxsize: int):
        self.backend = backend
        self.channels = channels
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, channel: str, data: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait((channel, data))
        except asyncio.QueueFull:
            logger.warning(f"Subscriber queue full on {channel}, dropping event")
            return False
        return True

    async def __anext__(self) -> Tuple[str, str]:
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        # None is the wake-up sentinel pushed by aclose()
        if item is None or self.closed:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.backend._unsubscribe(self)
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class MemoryBackend(Backend):
    """Single-process backend: dict storage with lazy per-key expiry and queue fan-out.

    ``clock`` returns seconds and is shared with the services in tests so that
    expiry can be driven without sleeping.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.clock = clock
        self.queue_size = queue_size
        self._data: Dict[str, Any] = {}
        self._deadlines: Dict[str, float] = {}
        self._subscribers: Dict[str, Set[MemoryChannelFeed]] = {}

    def _live(self, key: str) -> bool:
        deadline = self._deadlines.get(key)
        if deadline is not None and deadline <= self.clock():
            self._data.pop(key, None)
            self._deadlines.pop(key, None)
            return False
        return key in self._data

    def _lookup(self, key: str, default_factory: Optional[Callable[[], Any]] = None):
        if self._live(key):
            return self._data[key]
        if default_factory is None:
            return None
        value = default_factory()
        self._data[key] = value
        return value

    def _expire(self, key: str, ttl: float) -> None:
        self._deadlines[key] = self.clock() + ttl

    def keys(self, pattern: str = "*") -> List[str]:
        return [key for key in list(self._data) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    async def get(self, key: str) -> Optional[str]:
        return self._lookup(key)

    async def set(self, key: str, value: str, ttl: float, only_if_absent: bool = False) -> bool:
        if only_if_absent and self._live(key):
            return False
        self._data[key] = value
        self._expire(key, ttl)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key):
                deleted += 1
            self._data.pop(key, None)
            self._deadlines.pop(key, None)
        return deleted

    async def list_append_sequenced(
        self, key: str, counter_key: str, guard_key: str, guard_value: str, record: dict, now_ms: int, ttl: float
    ) -> Optional[str]:
        # No await in here, so the check, stamp and append are one step for the event loop
        if self._lookup(guard_key) != guard_value:
            return None
        counter = self._lookup(counter_key, dict)
        counter["seq"] = counter.get("seq", 0) + 1
        counter["ts"] = max(now_ms, counter.get("ts", 0))
        stamped = dict(record, id=MESSAGE_ID_FORMAT % (counter["ts"], counter["seq"]), timestamp=counter["ts"])
        raw = json.dumps(stamped)
        self._lookup(key, list).append(raw)
        self._expire(counter_key, ttl)
        self._expire(key, ttl)
        return raw

    async def list_range(self, key: str) -> List[str]:
        return list(self._lookup(key) or [])

    async def hash_set(self, key: str, field: str, value: str, ttl: float) -> None:
        self._lookup(key, dict)[field] = value
        self._expire(key, ttl)

    async def hash_delete(self, key: str, field: str) -> int:
        mapping = self._lookup(key)
        if not mapping or field not in mapping:
            return 0
        del mapping[field]
        if not mapping:
            await self.delete(key)
        return 1

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        return dict(self._lookup(key) or {})

    async def index_add(self, index: str, member: str, score: float) -> None:
        self._lookup(index, dict)[member] = score

    async def index_remove(self, index: str, member: str) -> bool:
        scores = self._lookup(index)
        if not scores or member not in scores:
            return False
        del scores[member]
        return True

    async def index_score(self, index: str, member: str) -> Optional[float]:
        return (self._lookup(index) or {}).get(member)

    async def index_due(self, index: str, max_score: float) -> List[str]:
        scores = self._lookup(index) or {}
        due = [(score, member) for member, score in scores.items() if score <= max_score]
        return [member for _, member in sorted(due)]

    async def publish(self, channel: str, data: str) -> int:
        delivered = 0
        for feed in list(self._subscribers.get(channel, ())):
            if feed.push(channel, data):
                delivered += 1
        logger.debug(f"Published message to channel {channel}, {delivered} subscribers")
        return delivered

    async def subscribe(self, channels: List[str]) -> ChannelFeed:
        feed = MemoryChannelFeed(self, channels, self.queue_size)
        for channel in channels:
            self._subscribers.setdefault(channel, set()).add(feed)
        logger.debug(f"Subscribed to channels {channels}")
        return feed

    def _unsubscribe(self, feed: MemoryChannelFeed) -> None:
        for channel in feed.channels:
            subscribers = self._subscribers.get(channel)
            if subscribers is None:
                continue
            subscribers.discard(feed)
            if not subscribers:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))
