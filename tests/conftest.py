"""pytest configuration for speedwatch tests."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeWebSocket:
    """Stands in for a FastAPI WebSocket driven by a scripted device.

    Inbound frames are queued with :meth:`push`; :meth:`close` (from the
    server) and :meth:`drop` (from the device) both unblock the pending
    receive with a ``websocket.disconnect`` message, as the ASGI server does.
    """

    def __init__(self, host: str = "10.0.0.5", fail_send: bool = False) -> None:
        self.client = SimpleNamespace(host=host, port=40000)
        self.sent: list[dict] = []
        self.accepted = False
        self.closed = False
        self.close_code: int | None = None
        self.close_calls = 0
        self.fail_send = fail_send
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    def push(self, message: dict | str) -> None:
        text = message if isinstance(message, str) else json.dumps(message)
        self._inbox.put_nowait({"type": "websocket.receive", "text": text})

    def drop(self, code: int = 1006) -> None:
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict:
        return await self._inbox.get()

    async def send_json(self, data: dict) -> None:
        if self.fail_send or self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls += 1
        if self.closed:
            raise RuntimeError("WebSocket already closed")
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def sent_types(self) -> list[str]:
        return [m.get("type") for m in self.sent]


class RecordingForwarder:
    """Collects forwarded events instead of sending them."""

    enabled = True

    def __init__(self) -> None:
        self.events: list[dict] = []

    def forward(self, event: dict) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]

    async def aclose(self) -> None:
        pass


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
def forwarder():
    return RecordingForwarder()


@pytest.fixture
def clock():
    return FakeClock()


async def settle(delay: float = 0.01) -> None:
    """Let queued handler work run."""
    await asyncio.sleep(delay)


@pytest.fixture
def wait():
    return settle
