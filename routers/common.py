import asyncio
from typing import Awaitable, Callable, TypeVar

from fastapi import HTTPException, Query

from constants import STORE_RETRY_ATTEMPTS, STORE_RETRY_BACKOFF_SECONDS
from errors import InvalidInput, StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def room_id_param(room_id: str = Query(alias="roomId", min_length=1, max_length=128)) -> str:
    if not room_id.strip():
        raise InvalidInput("roomId must not be blank")
    return room_id


def store_unavailable(operation: str, error: Exception) -> HTTPException:
    logger.error(f"{operation} failed, store unavailable: {error}")
    return HTTPException(status_code=503, detail="Store unavailable, retry later", headers={"Retry-After": "1"})


async def with_store_retry(operation: str, call: Callable[[], Awaitable[T]],
                           attempts: int = STORE_RETRY_ATTEMPTS,
                           backoff: float = STORE_RETRY_BACKOFF_SECONDS) -> T:
    """Run an idempotent core call, retrying StoreUnavailable with exponential backoff."""
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except StoreUnavailable as e:
            if attempt == attempts:
                raise store_unavailable(operation, e)
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"{operation}: store unavailable (attempt {attempt}/{attempts}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
