"""Probe lifecycle manager.

Owns the registry, forwarder and scheduler and wires them together.  This is
the entry point the HTTP app uses at startup and for every probe connection.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

from speedwatch.config import Settings
from speedwatch.coordinator.forwarder import ResultForwarder
from speedwatch.coordinator.registry import DeviceRegistry
from speedwatch.coordinator.scheduler import REASON_SERVER_SHUTDOWN, SpeedTestScheduler
from speedwatch.coordinator.websocket import ConnectionHandler

logger = logging.getLogger(__name__)


class ProbeManager:
    """Central manager for all probe sessions."""

    def __init__(
        self,
        settings: Settings,
        forwarder: ResultForwarder | None = None,
    ) -> None:
        self.settings = settings
        self.registry = DeviceRegistry()
        self.forwarder = forwarder or ResultForwarder(
            settings.collector_url,
            collector_path=settings.collector_path,
            timeout=settings.collector_timeout,
        )
        self.scheduler = SpeedTestScheduler(
            self.registry,
            self.forwarder,
            interval=settings.test_interval,
            timeout=settings.test_timeout,
            file_size=settings.test_file_size,
        )

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the probe subsystem (scheduler loop)."""
        if not self.forwarder.enabled:
            logger.warning("No collector URL configured, results will not be forwarded")
        await self.scheduler.start()
        logger.info("ProbeManager started")

    async def stop(self) -> None:
        """Stop the scheduler, evict live sessions, flush the forwarder."""
        await self.scheduler.stop()
        await self.registry.for_each(
            lambda session: self.scheduler.disconnect(session, REASON_SERVER_SHUTDOWN)
        )
        await self.forwarder.aclose()
        logger.info("ProbeManager stopped")

    # ── Connections ────────────────────────────────────────────────

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one probe WebSocket until it closes."""
        handler = ConnectionHandler(
            websocket,
            self.registry,
            self.scheduler,
            self.forwarder,
            self.settings.valid_tokens,
        )
        await handler.run()

    async def list_devices(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in await self.registry.snapshot()]
