import time
from typing import Callable, Dict, List, Optional

from backend import ExpiringStore
from constants import TYPING_TTL_SECONDS
from logging_config import get_logger
from redis_keys import REDIS_TYPING_KEY
from services.broadcaster import Broadcaster, EventKind

logger = get_logger(__name__)


class TypingTracker:
    """Per-room, per-sender typing state with a short self-clearing window.

    Entries live in the ``room:typing:{id}`` hash as ``sender -> expires_at``.
    An entry that runs past ``expires_at`` without renewal simply stops counting;
    no ``isTyping: false`` event is published for it.
    """

    def __init__(
        self,
        store: ExpiringStore,
        broadcaster: Broadcaster,
        window: float = TYPING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.window = window
        self.clock = clock

    async def set_typing(self, room_id: str, sender: str, is_typing: bool) -> None:
        key = REDIS_TYPING_KEY.format(slug=room_id)
        if is_typing:
            expires_at = self.clock() + self.window
            await self.store.hash_set(key, sender, str(expires_at), ttl=self.window)
        else:
            await self.store.hash_delete(key, sender)
        logger.debug(f"Typing state for {sender} in room {room_id}: {is_typing}")
        await self.broadcaster.publish(room_id, EventKind.TYPING, {"sender": sender, "isTyping": is_typing})

    async def typing_senders(self, room_id: str) -> List[str]:
        key = REDIS_TYPING_KEY.format(slug=room_id)
        now = self.clock()
        senders = []
        for sender, expires_at in (await self.store.hash_get_all(key)).items():
            try:
                active = float(expires_at) > now
            except ValueError:
                active = False
            if active:
                senders.append(sender)
            else:
                await self.store.hash_delete(key, sender)
        return sorted(senders)


class TypingView:
    """Typing indicator state kept by one viewer.

    Applies ``chat.typing`` payloads and times senders out on its own after
    ``window`` seconds, so a lost ``isTyping: false`` never leaves a stale
    indicator behind.
    """

    def __init__(self, viewer: Optional[str] = None, window: float = TYPING_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.viewer = viewer
        self.window = window
        self.clock = clock
        self._deadlines: Dict[str, float] = {}

    def apply(self, payload: dict) -> None:
        sender = payload.get("sender")
        if not sender or sender == self.viewer:
            return
        if payload.get("isTyping"):
            self._deadlines[sender] = self.clock() + self.window
        else:
            self._deadlines.pop(sender, None)

    @property
    def active(self) -> List[str]:
        now = self.clock()
        self._deadlines = {sender: deadline for sender, deadline in self._deadlines.items() if deadline > now}
        return sorted(self._deadlines)
