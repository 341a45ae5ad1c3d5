import asyncio
import time
from typing import Callable, List, Optional

from backend import ExpiringStore
from constants import EXPIRY_SWEEP_INTERVAL
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import REDIS_EXPIRY_INDEX
from services.rooms import RoomRegistry

logger = get_logger(__name__)


class ExpiryWatcher:
    """Background task that destroys rooms whose TTL ran out.

    The store drops expired keys by itself; this loop is what turns that into a
    ``destroy`` event for connected viewers.
    """

    def __init__(
        self,
        store: ExpiringStore,
        registry: RoomRegistry,
        interval: float = EXPIRY_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())
            logger.info(f"Room expiry watcher started (interval {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Room expiry watcher stopped")

    async def sweep(self) -> List[str]:
        expired = []
        for room_id in await self.store.index_due(REDIS_EXPIRY_INDEX, self.clock()):
            if await self.registry.expire_room(room_id):
                expired.append(room_id)
        if expired:
            logger.info(f"Expired {len(expired)} rooms: {expired}")
        return expired

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except StoreUnavailable as e:
                logger.warning(f"Expiry sweep skipped, store unavailable: {e}")
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}", exc_info=True)
