"""Tests for ExpiryWatcher."""

from __future__ import annotations

import asyncio

import pytest

from errors import StoreUnavailable
from services.core import ChatCore


class TestSweep:
    async def test_sweep_destroys_due_rooms_once(self, core: ChatCore, clock, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        clock.advance(300)
        await core.rooms.create_or_get_room("r2")
        subscription = await core.broadcaster.subscribe(["r1", "r2"])

        clock.advance(300)
        assert await core.expiry.sweep() == ["r1"]
        assert await core.expiry.sweep() == []
        assert await core.rooms.get_remaining_ttl("r2") == 300

        clock.advance(300)
        assert await core.expiry.sweep() == ["r2"]

        events = await drain(subscription)
        assert [(event.event, event.channel) for event in events] == [
            ("chat.destroy", "r1"),
            ("chat.destroy", "r2"),
        ]
        assert subscription.closed

    async def test_sweep_skips_destroyed_rooms(self, core: ChatCore, clock) -> None:
        await core.rooms.create_or_get_room("r1")
        await core.rooms.destroy_room("r1")
        clock.advance(600)
        assert await core.expiry.sweep() == []

    async def test_sweep_skips_recreated_rooms(self, core: ChatCore, clock) -> None:
        await core.rooms.create_or_get_room("r1")
        await core.rooms.destroy_room("r1")
        clock.advance(100)
        await core.rooms.create_or_get_room("r1")
        clock.advance(550)
        assert await core.expiry.sweep() == []
        assert await core.rooms.get_remaining_ttl("r1") == 50


class TestBackgroundLoop:
    async def test_loop_expires_rooms(self, core: ChatCore, clock) -> None:
        core.expiry.interval = 0.01
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"])
        core.expiry.start()
        try:
            clock.advance(600)
            event = await asyncio.wait_for(subscription.__anext__(), 1)
            assert event.event == "chat.destroy"
        finally:
            await core.expiry.stop()
        assert not core.expiry.running

    async def test_loop_survives_store_outage(self, core: ChatCore, backend, monkeypatch) -> None:
        calls = []

        async def unavailable(index: str, max_score: float) -> list:
            calls.append(max_score)
            raise StoreUnavailable("down")

        monkeypatch.setattr(backend, "index_due", unavailable)
        core.expiry.interval = 0.01
        core.expiry.start()
        try:
            await asyncio.sleep(0.1)
            assert core.expiry.running
            assert len(calls) >= 2
        finally:
            await core.expiry.stop()

    async def test_sweep_propagates_store_errors(self, core: ChatCore, backend, monkeypatch) -> None:
        async def unavailable(index: str, max_score: float) -> list:
            raise StoreUnavailable("down")

        monkeypatch.setattr(backend, "index_due", unavailable)
        with pytest.raises(StoreUnavailable):
            await core.expiry.sweep()
