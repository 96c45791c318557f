"""Tests for session persistence and leases."""

import asyncio
import json

import pytest

from reelforge.models import SessionRecord
from reelforge.session_store import FileSessionStore, MemorySessionStore, SessionLeases

STATE = {"cookies": [{"name": "sid", "value": "abc"}], "origins": []}


class TestFileSessionStore:

    @pytest.mark.unit
    def test_save_and_load(self, tmp_path):
        store = FileSessionStore(tmp_path)
        store.save(SessionRecord(session_key="runway_session", adapter_id="runway", auth_state=STATE))
        record = FileSessionStore(tmp_path).load("runway_session")
        assert record.auth_state == STATE
        assert record.adapter_id == "runway"
        assert record.saved_at

    @pytest.mark.unit
    def test_missing_and_empty(self, tmp_path):
        store = FileSessionStore(tmp_path)
        assert store.load("nope") is None
        store.save(SessionRecord(session_key="empty"))
        assert store.load("empty") is None

    @pytest.mark.unit
    def test_bare_storage_state_accepted(self, tmp_path):
        (tmp_path / "claude_session.json").write_text(json.dumps(STATE), encoding="utf-8")
        record = FileSessionStore(tmp_path).load("claude_session")
        assert record.session_key == "claude_session"
        assert record.auth_state["cookies"][0]["value"] == "abc"

    @pytest.mark.unit
    def test_list_and_delete(self, tmp_path):
        store = FileSessionStore(tmp_path)
        assert store.list_keys() == []
        store.save(SessionRecord(session_key="a", auth_state=STATE))
        store.save(SessionRecord(session_key="b", auth_state=STATE))
        assert store.list_keys() == ["a", "b"]
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.list_keys() == ["b"]


class TestMemorySessionStore:

    @pytest.mark.unit
    def test_copies_on_the_way_in_and_out(self):
        store = MemorySessionStore()
        record = SessionRecord(session_key="k", auth_state={"cookies": []})
        store.save(record)
        record.auth_state["cookies"].append({"name": "late"})
        loaded = store.load("k")
        assert loaded.auth_state == {"cookies": []}
        loaded.auth_state["cookies"].append({"name": "x"})
        assert store.load("k").auth_state == {"cookies": []}


class TestSessionLeases:

    @pytest.mark.asyncio
    async def test_exclusive(self):
        leases = SessionLeases()
        await leases.acquire("k", holder="first")
        assert leases.is_leased("k")
        assert leases.holder("k") == "first"
        with pytest.raises(asyncio.TimeoutError):
            await leases.acquire("k", holder="second", timeout=0.05)
        leases.release("k")
        await leases.acquire("k", holder="second", timeout=0.5)
        assert leases.holder("k") == "second"
        leases.release("k")
        leases.release("k")
        assert not leases.is_leased("k")

    @pytest.mark.asyncio
    async def test_waiter_gets_lease_after_release(self):
        leases = SessionLeases()
        order = []

        async def use(name):
            async with leases.lease("k", holder=name):
                order.append(f"{name}+")
                await asyncio.sleep(0.02)
                order.append(f"{name}-")

        await asyncio.gather(use("a"), use("b"))
        assert order == ["a+", "a-", "b+", "b-"]

    @pytest.mark.asyncio
    async def test_independent_keys(self):
        leases = SessionLeases()
        await leases.acquire("a")
        await leases.acquire("b", timeout=0.05)
        assert leases.is_leased("a") and leases.is_leased("b")
