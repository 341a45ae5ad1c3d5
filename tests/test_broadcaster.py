"""Tests for Broadcaster and Subscription."""

from __future__ import annotations

import logging

import pytest

from errors import BroadcastUnavailable, InvalidInput
from memory_backend import MemoryBackend
from services.broadcaster import EventKind, SubscriptionState, parse_event_kinds, room_channel
from services.core import ChatCore, build_core


class FailingPublishBackend(MemoryBackend):
    async def publish(self, channel: str, data: str) -> int:
        raise BroadcastUnavailable("bus down")


class TestSubscription:
    async def test_filters_event_kinds(self, core: ChatCore, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"], [EventKind.MESSAGE])

        await core.typing.set_typing("r1", "a", True)
        await core.messages.append("r1", "a", "hi")

        events = await drain(subscription)
        assert [event.event for event in events] == ["chat.message"]

    async def test_destroy_after_message_is_delivered_after_it(self, core: ChatCore, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"])

        await core.messages.append("r1", "a", "bye")
        await core.typing.set_typing("r1", "a", False)
        await core.rooms.destroy_room("r1")

        events = await drain(subscription)
        assert [event.event for event in events] == ["chat.message", "chat.typing", "chat.destroy"]
        assert subscription.state is SubscriptionState.CLOSED

    async def test_auto_closes_on_destroy_even_when_not_requested(self, core: ChatCore, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"], [EventKind.MESSAGE])
        await core.rooms.destroy_room("r1")
        assert await drain(subscription) == []
        assert subscription.closed

    async def test_state_moves_from_open_to_delivering(self, core: ChatCore) -> None:
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"])
        assert subscription.state is SubscriptionState.OPEN
        await core.messages.append("r1", "a", "hi")
        await subscription.__anext__()
        assert subscription.state is SubscriptionState.DELIVERING
        await subscription.close()
        assert subscription.state is SubscriptionState.CLOSED

    async def test_cancel_stops_delivery_and_leaves_others_alone(self, core: ChatCore, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        cancelled = await core.broadcaster.subscribe(["r1"])
        other = await core.broadcaster.subscribe(["r1"])

        await cancelled.close()
        await cancelled.close()
        await core.messages.append("r1", "a", "hi")

        assert await drain(cancelled) == []
        assert [event.data["text"] for event in await drain(other)] == ["hi"]
        assert await core.rooms.get_remaining_ttl("r1") == 600

    async def test_context_manager_closes(self, core: ChatCore) -> None:
        async with await core.broadcaster.subscribe(["r1"]) as subscription:
            assert not subscription.closed
        assert subscription.closed

    async def test_multi_room_stays_open_until_all_destroyed(self, core: ChatCore, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        await core.rooms.create_or_get_room("r2")
        subscription = await core.broadcaster.subscribe(["r1", "r2"])

        await core.rooms.destroy_room("r1")
        await core.messages.append("r2", "b", "hello")
        first = await drain(subscription)
        assert [(event.event, event.channel) for event in first] == [
            ("chat.destroy", "r1"),
            ("chat.message", "r2"),
        ]
        assert not subscription.closed

        await core.rooms.destroy_room("r2")
        assert [event.channel for event in await drain(subscription)] == ["r2"]
        assert subscription.closed

    async def test_malformed_frames_are_skipped(self, core: ChatCore, backend, drain) -> None:
        await core.rooms.create_or_get_room("r1")
        subscription = await core.broadcaster.subscribe(["r1"])

        await backend.publish(room_channel("r1"), "not json")
        await backend.publish(room_channel("r1"), '{"event": "chat.unknown", "channel": "r1", "data": {}}')
        await core.messages.append("r1", "a", "hi")

        assert [event.event for event in await drain(subscription)] == ["chat.message"]

    async def test_subscribe_needs_a_room(self, core: ChatCore) -> None:
        with pytest.raises(ValueError):
            await core.broadcaster.subscribe([])


class TestBroadcastFailure:
    async def test_store_mutation_survives_publish_failure(self, clock, caplog) -> None:
        core = build_core(FailingPublishBackend(clock=clock), clock=clock)
        await core.rooms.create_or_get_room("r1")

        with caplog.at_level(logging.ERROR):
            message = await core.messages.append("r1", "a", "hi")
            await core.typing.set_typing("r1", "a", True)

        assert await core.messages.list("r1") == [message]
        assert await core.typing.typing_senders("r1") == ["a"]
        assert "Failed to publish chat.message" in caplog.text

    async def test_publish_reports_failure(self, clock) -> None:
        core = build_core(FailingPublishBackend(clock=clock), clock=clock)
        assert await core.broadcaster.publish("r1", EventKind.TYPING, {}) is False


class TestParseEventKinds:
    def test_all_when_empty(self) -> None:
        assert parse_event_kinds(None) is None
        assert parse_event_kinds("") is None

    def test_wire_and_short_names(self) -> None:
        assert parse_event_kinds("chat.message, destroy") == [EventKind.MESSAGE, EventKind.DESTROY]

    def test_unknown_name(self) -> None:
        with pytest.raises(InvalidInput):
            parse_event_kinds("chat.bogus")
