"""Speed test scheduler: periodic test issuance and timeout detection."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from speedwatch.coordinator.forwarder import ResultForwarder, connection_lost_event
from speedwatch.coordinator.registry import DeviceRegistry, DeviceSession

logger = logging.getLogger(__name__)

REASON_TEST_TIMEOUT = "test_timeout"
REASON_SOCKET_CLOSED = "socket_closed"
REASON_SOCKET_ERROR = "socket_error"
REASON_SERVER_SHUTDOWN = "server_shutdown"


class SpeedTestScheduler:
    """Drives the test-and-report cycle for every registered device.

    Each tick walks a registry snapshot once.  A session that is waiting for
    a result is checked against its deadline; an idle session is sent a new
    ``speed_test_request``.  The two branches never both apply to the same
    session in one tick.

    :meth:`disconnect` is the single eviction path, shared with the
    connection handler, so every lost device produces exactly one
    ``connection_lost`` event.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        forwarder: ResultForwarder,
        interval: float = 30.0,
        timeout: float = 15.0,
        file_size: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.forwarder = forwarder
        self.interval = interval
        self.timeout = timeout
        self.file_size = file_size
        self._clock = clock
        self._running = False
        self._task: asyncio.Task | None = None
        self._last_tick: float | None = None

    async def start(self) -> None:
        """Start the background tick loop."""
        if self._running:
            logger.warning("Speed test scheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Speed test scheduler started (interval=%.0fs, timeout=%.0fs, file_size=%d)",
            self.interval, self.timeout, self.file_size,
        )

    async def stop(self) -> None:
        """Stop the background tick loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Speed test scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def now(self) -> float:
        """Current reading of the scheduler's deadline clock."""
        return self._clock()

    @property
    def last_tick(self) -> float | None:
        """Wall-clock time of the last completed tick, or None."""
        return self._last_tick

    async def run_tick(self) -> dict:
        """Run one check-and-issue pass over all sessions.

        Returns: ``{checked, issued, timed_out}``
        """
        stats = {"checked": 0, "issued": 0, "timed_out": 0}
        now = self._clock()

        for session in await self.registry.snapshot():
            if session.removed:
                continue
            stats["checked"] += 1

            if session.awaiting_result:
                issued_at = session.test_issued_at
                if issued_at is not None and now - issued_at > self.timeout:
                    logger.warning(
                        "Speed test timed out for %s (%.1fs without result)",
                        session.device_id, now - issued_at,
                    )
                    if await self.disconnect(session, REASON_TEST_TIMEOUT):
                        stats["timed_out"] += 1
            elif await self.request_test(session, now=now):
                stats["issued"] += 1

        self._last_tick = time.time()
        return stats

    async def request_test(self, session: DeviceSession, now: float | None = None) -> bool:
        """Mark *session* as awaiting a result and send it a test request.

        Returns ``False`` if the session is gone or the send failed; a
        failed send evicts the session.
        """
        if session.removed or session.connection.closed:
            return False

        session.mark_awaiting(self._clock() if now is None else now)
        try:
            await session.connection.send({
                "type": "speed_test_request",
                "fileSize": self.file_size,
            })
        except Exception as exc:
            logger.warning("Failed to send speed test request to %s: %s", session.device_id, exc)
            await self.disconnect(session, REASON_SOCKET_ERROR)
            return False

        logger.info("Speed test requested from %s", session.device_id)
        return True

    async def disconnect(
        self,
        session: DeviceSession,
        reason: str,
        close_connection: bool = True,
    ) -> bool:
        """Evict *session*, forward one failure event, close its connection.

        Idempotent: returns ``False`` without side effects if the session was
        already removed or replaced.
        """
        removed = await self.registry.remove(session.device_id, session)
        if removed is None:
            logger.debug("Session for %s already removed (%s)", session.device_id, reason)
            return False

        session.mark_idle()
        self.forwarder.forward(connection_lost_event(session, reason))
        logger.info("Device %s disconnected (%s)", session.device_id, reason)

        if close_connection:
            await session.connection.close(reason=reason)
        return True

    async def _loop(self) -> None:
        """Main background loop: sleep one interval, then tick."""
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                result = await self.run_tick()
                logger.debug(
                    "Tick complete: %d sessions, %d requests, %d timeouts",
                    result["checked"], result["issued"], result["timed_out"],
                )
            except Exception:
                logger.exception("Speed test tick failed")
