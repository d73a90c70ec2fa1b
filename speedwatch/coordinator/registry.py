"""In-memory registry of connected probe devices.

Holds one :class:`DeviceSession` per device id.  All access goes through
:class:`DeviceRegistry`, which serializes mutations with an
:class:`asyncio.Lock` so connection handlers and the scheduler can share it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# May return an awaitable; for_each awaits it
SessionCallback = Callable[["DeviceSession"], Any]

STATE_IDLE = "idle"
STATE_AWAITING = "awaiting_result"
STATE_REMOVED = "removed"


class ProbeConnection:
    """Owns the WebSocket of one probe device."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        """Record that the transport is gone (peer closed or errored)."""
        self._closed = True

    async def send(self, message: dict) -> None:
        """Send a JSON message to the device."""
        await self.websocket.send_json(message)

    async def close(self, code: int = 1000, reason: str = "") -> bool:
        """Close the WebSocket.  Safe to call more than once.

        Returns ``True`` only for the call that actually closed it.
        """
        if self._closed:
            return False
        self._closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as exc:
            logger.debug("WebSocket already closed: %s", exc)
        return True


@dataclass(eq=False)
class DeviceSession:
    """Server-side state for one authenticated probe device."""

    device_id: str
    token: str
    connection: ProbeConnection
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    awaiting_result: bool = False
    test_issued_at: float | None = None
    removed: bool = False

    @property
    def state(self) -> str:
        if self.removed:
            return STATE_REMOVED
        return STATE_AWAITING if self.awaiting_result else STATE_IDLE

    def touch(self) -> None:
        self.last_seen = time.time()

    def mark_awaiting(self, now: float) -> None:
        self.awaiting_result = True
        self.test_issued_at = now

    def mark_idle(self) -> None:
        self.awaiting_result = False
        self.test_issued_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.device_id,
            "lastSeen": int(self.last_seen * 1000),
            "connectedAt": int(self.connected_at * 1000),
            "isOnline": not self.connection.closed,
            "waitingForTest": self.awaiting_result,
            "state": self.state,
        }


class DeviceRegistry:
    """Maps device id → live :class:`DeviceSession`."""

    def __init__(self) -> None:
        self._sessions: dict[str, DeviceSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, device_id: str, session: DeviceSession) -> DeviceSession | None:
        """Insert or replace the session for *device_id*.

        Returns the replaced session (if any) so the caller can close its
        stale connection.
        """
        async with self._lock:
            previous = self._sessions.get(device_id)
            self._sessions[device_id] = session
            if previous is session:
                return None
            if previous is not None:
                previous.removed = True
            return previous

    async def lookup(self, device_id: str) -> DeviceSession | None:
        async with self._lock:
            return self._sessions.get(device_id)

    async def remove(
        self, device_id: str, session: DeviceSession | None = None
    ) -> DeviceSession | None:
        """Remove the entry for *device_id*.

        When *session* is given the entry is removed only if it is that exact
        session, so a stale connection can never evict its replacement.
        Returns the removed session, or ``None`` if nothing was removed.
        """
        async with self._lock:
            current = self._sessions.get(device_id)
            if current is None:
                return None
            if session is not None and current is not session:
                return None
            del self._sessions[device_id]
            current.removed = True
            return current

    async def snapshot(self) -> list[DeviceSession]:
        """Return a copy of all current sessions."""
        async with self._lock:
            return list(self._sessions.values())

    async def for_each(self, fn: SessionCallback) -> None:
        """Call *fn* for every session in a snapshot taken up front.

        *fn* may be sync or async and may itself mutate the registry.
        """
        for session in await self.snapshot():
            result = fn(session)
            if inspect.isawaitable(result):
                await result

    async def find_by_connection(self, connection: ProbeConnection) -> DeviceSession | None:
        async with self._lock:
            for session in self._sessions.values():
                if session.connection is connection:
                    return session
            return None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions
