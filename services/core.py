import time
from dataclasses import dataclass
from typing import Callable

from fastapi.requests import HTTPConnection

from backend import Backend
from constants import EXPIRY_SWEEP_INTERVAL, ROOM_TTL_SECONDS, TYPING_TTL_SECONDS
from services.broadcaster import Broadcaster
from services.expiry import ExpiryWatcher
from services.messages import MessageLog
from services.presence import TypingTracker
from services.rooms import RoomRegistry


@dataclass
class ChatCore:
    backend: Backend
    broadcaster: Broadcaster
    rooms: RoomRegistry
    messages: MessageLog
    typing: TypingTracker
    expiry: ExpiryWatcher


def build_core(
    backend: Backend,
    clock: Callable[[], float] = time.time,
    room_ttl: int = ROOM_TTL_SECONDS,
    typing_window: float = TYPING_TTL_SECONDS,
    sweep_interval: float = EXPIRY_SWEEP_INTERVAL,
) -> ChatCore:
    broadcaster = Broadcaster(backend)
    rooms = RoomRegistry(backend, broadcaster, ttl_seconds=room_ttl, clock=clock)
    return ChatCore(
        backend=backend,
        broadcaster=broadcaster,
        rooms=rooms,
        messages=MessageLog(backend, rooms, broadcaster, clock=clock),
        typing=TypingTracker(backend, broadcaster, window=typing_window, clock=clock),
        expiry=ExpiryWatcher(backend, rooms, interval=sweep_interval, clock=clock),
    )


def get_core(conn: HTTPConnection) -> ChatCore:
    """FastAPI dependency: the core built during application startup."""
    return conn.app.state.core
