"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio

import pytest

from memory_backend import MemoryBackend
from services.broadcaster import Subscription
from services.core import ChatCore, build_core

ROOM_TTL = 600
TYPING_WINDOW = 3.0


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def core(backend: MemoryBackend, clock: FakeClock) -> ChatCore:
    return build_core(backend, clock=clock, room_ttl=ROOM_TTL, typing_window=TYPING_WINDOW, sweep_interval=3600)


@pytest.fixture
def drain():
    """Collect every event a subscription can hand out right now."""

    async def _drain(subscription: Subscription, timeout: float = 0.05) -> list:
        events = []
        while not subscription.closed:
            try:
                events.append(await asyncio.wait_for(subscription.__anext__(), timeout))
            except (asyncio.TimeoutError, StopAsyncIteration):
                break
        return events

    return _drain
