"""Tests for the device registry and session model."""

from __future__ import annotations

import asyncio
import random

import pytest

from speedwatch.coordinator.registry import (
    STATE_AWAITING,
    STATE_IDLE,
    STATE_REMOVED,
    DeviceRegistry,
    DeviceSession,
    ProbeConnection,
)


def _session(make_ws, device_id: str = "device_a", token: str = "TEST123") -> DeviceSession:
    return DeviceSession(device_id=device_id, token=token, connection=ProbeConnection(make_ws()))


class TestDeviceSession:
    def test_initial_state_idle(self, make_ws):
        s = _session(make_ws)
        assert s.state == STATE_IDLE
        assert s.awaiting_result is False
        assert s.test_issued_at is None

    def test_mark_awaiting_sets_deadline_base(self, make_ws):
        s = _session(make_ws)
        s.mark_awaiting(123.0)
        assert s.state == STATE_AWAITING
        assert s.test_issued_at == 123.0

    def test_mark_idle_clears(self, make_ws):
        s = _session(make_ws)
        s.mark_awaiting(5.0)
        s.mark_idle()
        assert s.state == STATE_IDLE
        assert s.test_issued_at is None

    def test_to_dict(self, make_ws):
        s = _session(make_ws, "device_x")
        s.mark_awaiting(1.0)
        d = s.to_dict()
        assert d["id"] == "device_x"
        assert d["isOnline"] is True
        assert d["waitingForTest"] is True
        assert d["state"] == STATE_AWAITING
        assert isinstance(d["lastSeen"], int)

    def test_sessions_compare_by_identity(self, make_ws):
        ws = make_ws()
        a = DeviceSession("d", "t", ProbeConnection(ws))
        b = DeviceSession("d", "t", ProbeConnection(ws))
        assert a != b


class TestProbeConnection:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_ws):
        ws = make_ws()
        conn = ProbeConnection(ws)
        assert await conn.close() is True
        assert await conn.close() is False
        assert ws.close_calls == 1
        assert conn.closed

    @pytest.mark.asyncio
    async def test_close_after_transport_gone(self, make_ws):
        ws = make_ws()
        conn = ProbeConnection(ws)
        conn.mark_closed()
        assert await conn.close() is False
        assert ws.close_calls == 0

    @pytest.mark.asyncio
    async def test_close_swallows_runtime_error(self, make_ws):
        ws = make_ws()
        ws.closed = True  # peer already gone, close() raises
        conn = ProbeConnection(ws)
        assert await conn.close() is True


class TestDeviceRegistry:
    @pytest.mark.asyncio
    async def test_register_and_lookup(self, make_ws):
        reg = DeviceRegistry()
        s = _session(make_ws)
        assert await reg.register("device_a", s) is None
        assert await reg.lookup("device_a") is s
        assert "device_a" in reg
        assert len(reg) == 1

    @pytest.mark.asyncio
    async def test_lookup_missing(self):
        reg = DeviceRegistry()
        assert await reg.lookup("nope") is None

    @pytest.mark.asyncio
    async def test_register_replaces_and_returns_previous(self, make_ws):
        reg = DeviceRegistry()
        old = _session(make_ws)
        new = _session(make_ws)
        await reg.register("device_a", old)
        previous = await reg.register("device_a", new)
        assert previous is old
        assert old.state == STATE_REMOVED
        assert await reg.lookup("device_a") is new
        assert len(reg) == 1

    @pytest.mark.asyncio
    async def test_register_same_session_twice(self, make_ws):
        reg = DeviceRegistry()
        s = _session(make_ws)
        await reg.register("device_a", s)
        assert await reg.register("device_a", s) is None
        assert s.state == STATE_IDLE

    @pytest.mark.asyncio
    async def test_remove_once(self, make_ws):
        reg = DeviceRegistry()
        s = _session(make_ws)
        await reg.register("device_a", s)
        assert await reg.remove("device_a", s) is s
        assert await reg.remove("device_a", s) is None
        assert s.state == STATE_REMOVED
        assert len(reg) == 0

    @pytest.mark.asyncio
    async def test_remove_stale_session_keeps_replacement(self, make_ws):
        reg = DeviceRegistry()
        old = _session(make_ws)
        new = _session(make_ws)
        await reg.register("device_a", old)
        await reg.register("device_a", new)
        assert await reg.remove("device_a", old) is None
        assert await reg.lookup("device_a") is new

    @pytest.mark.asyncio
    async def test_remove_without_session_check(self, make_ws):
        reg = DeviceRegistry()
        s = _session(make_ws)
        await reg.register("device_a", s)
        assert await reg.remove("device_a") is s

    @pytest.mark.asyncio
    async def test_find_by_connection(self, make_ws):
        reg = DeviceRegistry()
        a = _session(make_ws, "a")
        b = _session(make_ws, "b")
        await reg.register("a", a)
        await reg.register("b", b)
        assert await reg.find_by_connection(b.connection) is b
        assert await reg.find_by_connection(ProbeConnection(make_ws())) is None

    @pytest.mark.asyncio
    async def test_for_each_visits_snapshot_while_removing(self, make_ws):
        reg = DeviceRegistry()
        for i in range(10):
            await reg.register(f"d{i}", _session(make_ws, f"d{i}"))

        visited = []

        async def visit(session):
            visited.append(session.device_id)
            # Remove a different entry mid-iteration
            await reg.remove(f"d{(int(session.device_id[1:]) + 1) % 10}")

        await reg.for_each(visit)
        assert sorted(visited) == sorted(f"d{i}" for i in range(10))

    @pytest.mark.asyncio
    async def test_for_each_accepts_sync_callback(self, make_ws):
        reg = DeviceRegistry()
        await reg.register("a", _session(make_ws, "a"))
        seen = []
        await reg.for_each(lambda s: seen.append(s.device_id))
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_concurrent_operations_never_lose_or_duplicate(self, make_ws):
        reg = DeviceRegistry()
        n = 50
        sessions = {f"d{i}": _session(make_ws, f"d{i}") for i in range(n)}
        to_remove = {f"d{i}" for i in range(0, n, 3)}

        async def connection(device_id):
            await asyncio.sleep(random.random() / 100)
            await reg.register(device_id, sessions[device_id])
            await asyncio.sleep(random.random() / 100)
            if device_id in to_remove:
                await reg.remove(device_id, sessions[device_id])

        async def iterate():
            for _ in range(20):
                snap = await reg.snapshot()
                ids = [s.device_id for s in snap]
                assert len(ids) == len(set(ids))
                await asyncio.sleep(0)

        await asyncio.gather(*(connection(d) for d in sessions), iterate(), iterate())

        remaining = await reg.snapshot()
        ids = [s.device_id for s in remaining]
        assert len(ids) == len(set(ids))
        assert set(ids) == set(sessions) - to_remove
        for device_id in ids:
            assert await reg.lookup(device_id) is sessions[device_id]
