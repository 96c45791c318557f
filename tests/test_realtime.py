"""Tests for the realtime notifier."""

import json

import pytest

from reelforge.realtime import EventType, RealtimeEvent, RealtimeNotifier

from conftest import FakeConnection


class TestRealtimeEvent:

    @pytest.mark.unit
    def test_serialization(self):
        event = RealtimeEvent("task_queued", {"operationId": "op-1"})
        assert json.loads(event.to_json()) == {"type": "task_queued", "data": {"operationId": "op-1"}}

    @pytest.mark.unit
    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            RealtimeEvent("task_exploded")


class TestNotifier:

    @pytest.mark.asyncio
    async def test_no_connections_delivers_nothing(self):
        notifier = RealtimeNotifier()
        assert await notifier.emit("u1", EventType.TASK_QUEUED, operationId="op") == 0

    @pytest.mark.asyncio
    async def test_anonymous_user_delivers_nothing(self, connection):
        notifier = RealtimeNotifier()
        notifier.register("u1", connection)
        assert await notifier.emit(None, EventType.TASK_QUEUED) == 0
        assert connection.messages == []

    @pytest.mark.asyncio
    async def test_fans_out_to_every_connection_of_user(self):
        notifier = RealtimeNotifier()
        phone, laptop, other = FakeConnection(), FakeConnection(), FakeConnection()
        notifier.register("u1", phone)
        notifier.register("u1", laptop)
        notifier.register("u2", other)

        delivered = await notifier.emit("u1", EventType.TASK_STARTED, operationId="op", stage="script")

        assert delivered == 2
        assert phone.events()[0]["data"]["stage"] == "script"
        assert "timestamp" in laptop.events()[0]["data"]
        assert other.messages == []

    @pytest.mark.asyncio
    async def test_dead_connection_dropped(self):
        notifier = RealtimeNotifier()
        alive, dead = FakeConnection(), FakeConnection(dead=True)
        notifier.register("u1", alive)
        notifier.register("u1", dead)

        assert await notifier.emit("u1", EventType.TASK_COMPLETED) == 1
        assert notifier.connection_count("u1") == 1
        assert await notifier.emit("u1", EventType.TASK_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_unregister(self, connection):
        notifier = RealtimeNotifier()
        notifier.register("u1", connection)
        notifier.unregister("u1", connection)
        notifier.unregister("u1", connection)
        assert notifier.connection_count() == 0
        assert await notifier.emit("u1", EventType.TASK_ERROR, error="x") == 0

    @pytest.mark.asyncio
    async def test_broadcast(self):
        notifier = RealtimeNotifier()
        a, b = FakeConnection(), FakeConnection()
        notifier.register("u1", a)
        notifier.register("u2", b)
        assert await notifier.broadcast(RealtimeEvent("subscription_confirmed", {})) == 2
