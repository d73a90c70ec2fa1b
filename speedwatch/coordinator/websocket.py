"""WebSocket endpoint for probe devices.

Handles the coordination channel between the server and probe devices:

  Device → Server:
    auth, speed_result

  Server → Device:
    welcome, error, speed_test_request

Measurement traffic does not use this channel; devices upload to the
``/speed-test`` echo endpoint and report the outcome here.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Iterable

from fastapi import WebSocket, WebSocketDisconnect

from speedwatch.coordinator.forwarder import ResultForwarder, speed_result_event
from speedwatch.coordinator.registry import DeviceRegistry, DeviceSession, ProbeConnection
from speedwatch.coordinator.scheduler import (
    REASON_SOCKET_CLOSED,
    REASON_SOCKET_ERROR,
    SpeedTestScheduler,
)

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = "Connected. Waiting for speed tests."
CLOSE_POLICY_VIOLATION = 1008


def generate_device_id() -> str:
    """Synthesize an id for a device that did not supply one."""
    return f"device_{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"


class ConnectionHandler:
    """Runs the protocol for one probe WebSocket.

    Messages from one connection are handled strictly in arrival order; the
    next frame is not read until the previous one has been dispatched.
    """

    def __init__(
        self,
        websocket: WebSocket,
        registry: DeviceRegistry,
        scheduler: SpeedTestScheduler,
        forwarder: ResultForwarder,
        valid_tokens: Iterable[str],
    ) -> None:
        self.websocket = websocket
        self.connection = ProbeConnection(websocket)
        self.registry = registry
        self.scheduler = scheduler
        self.forwarder = forwarder
        self.valid_tokens = frozenset(valid_tokens)
        self.session: DeviceSession | None = None

    @property
    def label(self) -> str:
        if self.session is not None:
            return self.session.device_id
        client = self.websocket.client
        return f"{client.host}:{client.port}" if client else "unknown"

    async def run(self) -> None:
        """Accept the connection and process messages until it closes."""
        await self.websocket.accept()
        logger.info("New probe connection from %s", self.label)

        reason = REASON_SOCKET_CLOSED
        try:
            while True:
                raw = await self._receive()
                if not await self.handle_text(raw):
                    return
        except WebSocketDisconnect as exc:
            self.connection.mark_closed()
            logger.info("Probe %s disconnected (code %s)", self.label, exc.code)
        except Exception:
            reason = REASON_SOCKET_ERROR
            logger.exception("Error in probe WebSocket for %s", self.label)
        finally:
            if self.session is not None:
                await self.scheduler.disconnect(
                    self.session, reason,
                    close_connection=reason == REASON_SOCKET_ERROR,
                )
            if reason == REASON_SOCKET_ERROR:
                await self.connection.close(reason=reason)

    async def _receive(self) -> str:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        text = message.get("text")
        if text is not None:
            return text
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def handle_text(self, raw: str) -> bool:
        """Parse and dispatch one frame.

        Returns ``False`` when the connection has been closed by the server
        and the receive loop must stop.
        """
        if self.session is not None:
            self.session.touch()

        try:
            message = json.loads(raw)
        except ValueError as exc:
            logger.warning("Malformed message from %s: %s", self.label, exc)
            return True
        if not isinstance(message, dict):
            logger.warning("Non-object message from %s dropped", self.label)
            return True

        msg_type = message.get("type", "")

        if msg_type == "auth":
            return await self._handle_auth(message)

        elif msg_type == "speed_result":
            await self._handle_speed_result(message)

        else:
            logger.warning("Unknown message type from %s: %s", self.label, msg_type)

        return True

    # ── Message handlers ──────────────────────────────────────────

    async def _handle_auth(self, msg: dict[str, Any]) -> bool:
        if self.session is not None:
            logger.warning("Repeated auth from %s ignored", self.label)
            return True

        token = msg.get("token")
        if not isinstance(token, str) or token not in self.valid_tokens:
            logger.warning("Auth rejected for %s (token %r)", self.label, token)
            try:
                await self.connection.send({"type": "error", "message": "Invalid token"})
            finally:
                await self.connection.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid token")
            return False

        device_id = msg.get("deviceId")
        device_id = str(device_id) if device_id else generate_device_id()

        session = DeviceSession(device_id=device_id, token=token, connection=self.connection)
        # Registered as awaiting so a tick during the welcome send skips it
        session.mark_awaiting(self.scheduler.now())
        previous = await self.registry.register(device_id, session)
        self.session = session

        if previous is not None:
            logger.info("Device %s reconnected, closing previous connection", device_id)
            await previous.connection.close(reason="replaced")

        logger.info("Auth: %s (token %s)", device_id, token)

        await self.connection.send({
            "type": "welcome",
            "message": WELCOME_MESSAGE,
            "deviceId": device_id,
        })

        # Kick off the cycle without waiting for the next tick
        await self.scheduler.request_test(session)
        return True

    async def _handle_speed_result(self, msg: dict[str, Any]) -> None:
        if self.session is None:
            logger.warning("speed_result from unauthenticated connection %s ignored", self.label)
            return

        device_id = msg.get("deviceId") or self.session.device_id
        if str(device_id) != self.session.device_id:
            logger.warning(
                "Connection %s reported a result for another device (%s)",
                self.session.device_id, device_id,
            )
        session = await self.registry.lookup(str(device_id))
        if session is None:
            logger.info("Result for unknown device %s ignored", device_id)
            return

        if not session.awaiting_result:
            logger.debug("Unsolicited result from %s", device_id)

        session.mark_idle()
        session.touch()

        speed = msg.get("speedMbps")
        logger.info(
            "Result from %s: %s Mbps (%s bytes in %s ms)",
            device_id, speed, msg.get("bytes"), msg.get("duration"),
        )
        self.forwarder.forward(speed_result_event(session, speed))
