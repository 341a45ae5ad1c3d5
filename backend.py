## Storage / pub-sub backends


# The room core only needs two capabilities:
# - an expiring key-value store (strings, lists, hashes, counters, a scored index)
# - a topic based publish/subscribe bus
#
# RedisBackend provides both against a Redis server (shared by every app instance).
# MemoryBackend (memory_backend.py) provides both inside a single process.
#
# TTLs are float seconds. Every write that passes a TTL resets the key's expiry.
import abc
import json
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_URL, STORE_BACKEND
from errors import BroadcastUnavailable, StoreUnavailable
from logging_config import get_logger
from redis_keys import MESSAGE_ID_FORMAT

logger = get_logger(__name__)


class ChannelFeed(abc.ABC):
    """Raw frames from one or more pub/sub channels, as ``(channel, data)`` tuples."""

    def __aiter__(self) -> "ChannelFeed":
        return self

    @abc.abstractmethod
    async def __anext__(self) -> Tuple[str, str]:
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        ...


class ExpiringStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: float, only_if_absent: bool = False) -> bool:
        """Store ``value``. Returns False when ``only_if_absent`` and the key exists."""

    @abc.abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete-if-exists. Returns how many keys were actually removed."""

    @abc.abstractmethod
    async def list_append_sequenced(
        self, key: str, counter_key: str, guard_key: str, guard_value: str, record: dict, now_ms: int, ttl: float
    ) -> Optional[str]:
        """Atomically stamp ``record`` and append it to the list at ``key``.

        Only runs while ``guard_key`` still holds ``guard_value``; returns None otherwise.
        The hash at ``counter_key`` hands out the next ``seq`` and remembers the last
        timestamp, so ``timestamp = max(now_ms, last)`` never goes backwards. The record
        gets ``id`` (``MESSAGE_ID_FORMAT``) and ``timestamp`` and is returned as stored.
        """

    @abc.abstractmethod
    async def list_range(self, key: str) -> List[str]:
        ...

    @abc.abstractmethod
    async def hash_set(self, key: str, field: str, value: str, ttl: float) -> None:
        ...

    @abc.abstractmethod
    async def hash_delete(self, key: str, field: str) -> int:
        ...

    @abc.abstractmethod
    async def hash_get_all(self, key: str) -> Dict[str, str]:
        ...

    @abc.abstractmethod
    async def index_add(self, index: str, member: str, score: float) -> None:
        ...

    @abc.abstractmethod
    async def index_remove(self, index: str, member: str) -> bool:
        """Remove ``member``. Only one of several concurrent callers gets True."""

    @abc.abstractmethod
    async def index_score(self, index: str, member: str) -> Optional[float]:
        ...

    @abc.abstractmethod
    async def index_due(self, index: str, max_score: float) -> List[str]:
        """Members with score <= ``max_score``, lowest score first."""


class PubSub(abc.ABC):
    @abc.abstractmethod
    async def publish(self, channel: str, data: str) -> int:
        """Fire-and-forget. Returns the number of subscribers that received it."""

    @abc.abstractmethod
    async def subscribe(self, channels: List[str]) -> ChannelFeed:
        ...


class Backend(ExpiringStore, PubSub):
    name = "abstract"

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@contextmanager
def _translate_errors(error_cls, operation: str):
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as e:
        logger.error(f"Redis {operation} failed: {e}")
        raise error_cls(f"Redis {operation} failed: {e}") from e


def _ms(ttl: float) -> int:
    # PEXPIRE rejects 0; a key that should already be gone gets the shortest lifetime
    return max(1, int(ttl * 1000))


# KEYS: guard, counter hash, list
# ARGV: guard value, now (ms), record JSON, id format, ttl (ms)
APPEND_SEQUENCED_SCRIPT = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
    return false
end
local seq = redis.call('HINCRBY', KEYS[2], 'seq', 1)
local ts = tonumber(ARGV[2])
local last = tonumber(redis.call('HGET', KEYS[2], 'ts') or '0')
if last > ts then
    ts = last
end
redis.call('HSET', KEYS[2], 'ts', string.format('%d', ts))
local record = cjson.decode(ARGV[3])
record['id'] = string.format(ARGV[4], ts, seq)
record['timestamp'] = ts
local raw = cjson.encode(record)
redis.call('RPUSH', KEYS[3], raw)
redis.call('PEXPIRE', KEYS[2], ARGV[5])
redis.call('PEXPIRE', KEYS[3], ARGV[5])
return raw
"""


class RedisChannelFeed(ChannelFeed):
    def __init__(self, pubsub, channels: List[str]):
        self.pubsub = pubsub
        self.channels = channels
        self._closed = False

    async def __anext__(self) -> Tuple[str, str]:
        while not self._closed:
            with _translate_errors(BroadcastUnavailable, "pubsub.get_message"):
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None:
                # Timeout or no message, keep waiting
                continue
            if message.get("type") == "message":
                return message["channel"], message["data"]
        raise StopAsyncIteration

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.pubsub.unsubscribe(*self.channels)
            await self.pubsub.aclose()
            logger.debug(f"Closed pub/sub connection for channels {self.channels}")
        except Exception as e:
            logger.error(f"Error closing pub/sub for channels {self.channels}: {e}")


class RedisBackend(Backend):
    name = "redis"

    def __init__(self, client: Optional[redis.Redis] = None):
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        if client is None and REDIS_URL:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        self.redis_client = client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        self._append_script = self.redis_client.register_script(APPEND_SEQUENCED_SCRIPT)

    async def ping(self) -> bool:
        with _translate_errors(StoreUnavailable, "ping"):
            await self.redis_client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return True

    async def close(self) -> None:
        await self.redis_client.aclose()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors(StoreUnavailable, "GET"):
            return await self.redis_client.get(key)

    async def set(self, key: str, value: str, ttl: float, only_if_absent: bool = False) -> bool:
        with _translate_errors(StoreUnavailable, "SET"):
            result = await self.redis_client.set(key, value, px=_ms(ttl), nx=only_if_absent)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors(StoreUnavailable, "DEL"):
            return await self.redis_client.delete(*keys)

    async def list_append_sequenced(
        self, key: str, counter_key: str, guard_key: str, guard_value: str, record: dict, now_ms: int, ttl: float
    ) -> Optional[str]:
        with _translate_errors(StoreUnavailable, "EVALSHA append"):
            raw = await self._append_script(
                keys=[guard_key, counter_key, key],
                args=[guard_value, now_ms, json.dumps(record), MESSAGE_ID_FORMAT, _ms(ttl)],
            )
        return raw or None

    async def list_range(self, key: str) -> List[str]:
        with _translate_errors(StoreUnavailable, "LRANGE"):
            return await self.redis_client.lrange(key, 0, -1)

    async def hash_set(self, key: str, field: str, value: str, ttl: float) -> None:
        with _translate_errors(StoreUnavailable, "HSET"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(key, field, value)
                pipe.pexpire(key, _ms(ttl))
                await pipe.execute()

    async def hash_delete(self, key: str, field: str) -> int:
        with _translate_errors(StoreUnavailable, "HDEL"):
            return await self.redis_client.hdel(key, field)

    async def hash_get_all(self, key: str) -> Dict[str, str]:
        with _translate_errors(StoreUnavailable, "HGETALL"):
            return await self.redis_client.hgetall(key)

    async def index_add(self, index: str, member: str, score: float) -> None:
        with _translate_errors(StoreUnavailable, "ZADD"):
            await self.redis_client.zadd(index, {member: score})

    async def index_remove(self, index: str, member: str) -> bool:
        with _translate_errors(StoreUnavailable, "ZREM"):
            return await self.redis_client.zrem(index, member) > 0

    async def index_score(self, index: str, member: str) -> Optional[float]:
        with _translate_errors(StoreUnavailable, "ZSCORE"):
            return await self.redis_client.zscore(index, member)

    async def index_due(self, index: str, max_score: float) -> List[str]:
        with _translate_errors(StoreUnavailable, "ZRANGEBYSCORE"):
            return await self.redis_client.zrangebyscore(index, "-inf", max_score)

    async def publish(self, channel: str, data: str) -> int:
        with _translate_errors(BroadcastUnavailable, "PUBLISH"):
            subscribers = await self.redis_client.publish(channel, data)
        logger.debug(f"Published message to channel {channel}, {subscribers} subscribers")
        return subscribers

    async def subscribe(self, channels: List[str]) -> ChannelFeed:
        logger.debug(f"Subscribing to Redis channels {channels}")
        # Each subscription holds its own pub/sub connection
        pubsub = self.redis_client.pubsub()
        with _translate_errors(BroadcastUnavailable, "SUBSCRIBE"):
            await pubsub.subscribe(*channels)
        logger.debug(f"Successfully subscribed to channels {channels}")
        return RedisChannelFeed(pubsub, channels)


def create_backend(kind: str = STORE_BACKEND) -> Backend:
    if kind == "memory":
        from memory_backend import MemoryBackend

        logger.warning("Using in-memory backend: rooms are not shared between processes")
        return MemoryBackend()
    if kind != "redis":
        raise ValueError(f"Unknown STORE_BACKEND {kind!r}")
    return RedisBackend()
