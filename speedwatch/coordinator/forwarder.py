"""Best-effort forwarding of probe events to the downstream collector.

Each event becomes one ``GET {collector_url}{collector_path}?...`` request
with the event fields as query parameters.  Delivery runs in a detached
task; callers never wait on it and failures are only logged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from speedwatch.coordinator.registry import DeviceSession

logger = logging.getLogger(__name__)

EVENT_SPEED_RESULT = "speed_result"
EVENT_CONNECTION_LOST = "connection_lost"


def _now_ms() -> int:
    return int(time.time() * 1000)


def speed_result_event(session: DeviceSession, speed_mbps: Any) -> dict[str, Any]:
    """Success record for a completed speed test."""
    return {
        "type": EVENT_SPEED_RESULT,
        "deviceId": session.device_id,
        "token": session.token,
        "speedMbps": speed_mbps,
        "success": True,
        "timestamp": _now_ms(),
    }


def connection_lost_event(session: DeviceSession, reason: str) -> dict[str, Any]:
    """Failure record; ``speedMbps`` is 0 as an explicit loss marker."""
    return {
        "type": EVENT_CONNECTION_LOST,
        "deviceId": session.device_id,
        "token": session.token,
        "speedMbps": 0,
        "reason": reason,
        "timestamp": _now_ms(),
    }


def encode_params(event: dict[str, Any]) -> dict[str, str]:
    """Flatten an event into query parameters (bools lowercased, None skipped)."""
    params: dict[str, str] = {}
    for key, value in event.items():
        if value is None:
            continue
        if isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = str(value)
    return params


class ResultForwarder:
    """Fire-and-forget notifier for the external collector.

    A single :class:`httpx.AsyncClient` is reused across deliveries.  Call
    :meth:`aclose` when done; it gives in-flight deliveries a short grace
    period before closing the client.
    """

    def __init__(
        self,
        collector_url: str,
        collector_path: str = "/webhook/ph1",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.collector_url = collector_url.rstrip("/")
        self.collector_path = collector_path
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.collector_url)

    @property
    def endpoint(self) -> str:
        return f"{self.collector_url}{self.collector_path}"

    @property
    def pending(self) -> int:
        return len(self._pending)

    def forward(self, event: dict[str, Any]) -> asyncio.Task | None:
        """Schedule delivery of *event* and return immediately."""
        if not self.enabled:
            logger.debug("Collector not configured, dropping %s event", event.get("type"))
            return None
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, event: dict[str, Any]) -> bool:
        params = encode_params(event)
        try:
            response = await self._client.get(self.endpoint, params=params)
        except httpx.HTTPError as exc:
            logger.error("Webhook error for %s: %s", event.get("deviceId"), exc)
            return False
        except Exception:
            logger.exception("Unexpected webhook failure for %s", event.get("deviceId"))
            return False
        if response.status_code >= 400:
            logger.warning(
                "Collector returned %d for %s event (%s)",
                response.status_code, event.get("type"), event.get("deviceId"),
            )
            return False
        logger.debug("Forwarded %s event for %s", event.get("type"), event.get("deviceId"))
        return True

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait up to *timeout* seconds for in-flight deliveries."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Dropped %d undelivered collector events", len(pending))

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()

    async def __aenter__(self) -> "ResultForwarder":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
