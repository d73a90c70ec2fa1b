"""WebSocket client connecting a probe device to the speedwatch server.

Handles the device side of the protocol:
  Device → Server: auth, speed_result
  Server → Device: welcome, error, speed_test_request
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import httpx
import websockets
from websockets.asyncio.client import ClientConnection

from .config import ProbeConfig
from .speedtest import ProbeError, SpeedResult, SpeedTestError, run_speed_test

logger = logging.getLogger(__name__)


class ProbeAuthError(ProbeError):
    """Raised when the server rejects the probe's token."""


class ProbeClient:
    """Probe agent: authenticates, runs requested tests, reports results.

    Reconnects at a fixed interval (``config.reconnect_interval``) after any
    disconnect, and gives up only when the server rejects the token.
    """

    def __init__(self, config: ProbeConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.device_id = config.device_id or config.generate_id()

        self._ws: Optional[ClientConnection] = None
        self._http = http_client
        self._connected = False
        self._running = False
        self.last_result: SpeedResult | None = None

    async def connect(self) -> bool:
        """Connect to the server and complete the auth handshake.

        Raises :class:`ProbeAuthError` if the token is rejected.
        """
        try:
            self._ws = await websockets.connect(
                self.config.server_url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
            await self._send({
                "type": "auth",
                "token": self.config.token,
                "deviceId": self.device_id,
            })
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self.config.handshake_timeout)
            response = json.loads(raw)
        except Exception:
            logger.exception("Failed to connect to %s", self.config.server_url)
            await self.disconnect()
            return False

        msg_type = response.get("type")
        if msg_type == "welcome":
            self.device_id = response.get("deviceId") or self.device_id
            self._connected = True
            logger.info("Connected to server as %s", self.device_id)
            return True

        await self.disconnect()
        if msg_type == "error":
            raise ProbeAuthError(response.get("message", "authentication rejected"))
        logger.error("Unexpected handshake reply: %s", response)
        return False

    async def _send(self, message: dict) -> None:
        """Send a JSON message."""
        if self._ws:
            await self._ws.send(json.dumps(message))

    async def listen(self) -> None:
        """Listen for messages from server. Blocks until disconnected."""
        if not self._ws:
            return
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.warning("Malformed message from server dropped")
                    continue
                await self.handle_message(msg)
        except websockets.ConnectionClosed:
            logger.info("Server connection closed")
        except Exception:
            logger.exception("WebSocket listen error")
        finally:
            self._connected = False

    async def handle_message(self, msg: dict) -> None:
        msg_type = msg.get("type", "")

        if msg_type == "speed_test_request":
            await self.perform_speed_test(msg.get("fileSize") or self.config.default_file_size)

        elif msg_type == "welcome":
            logger.info("Server: %s", msg.get("message", ""))

        elif msg_type == "error":
            logger.error("Server error: %s", msg.get("message", ""))

        else:
            logger.debug("Unhandled message type: %s", msg_type)

    async def perform_speed_test(self, file_size: int) -> SpeedResult | None:
        """Run one test and report it.

        Failures are not reported; the server's response timeout covers them.
        """
        try:
            result = await run_speed_test(
                self._http_client(),
                self.config.speed_test_url,
                int(file_size),
                device_id=self.device_id,
                token=self.config.token,
            )
        except SpeedTestError as exc:
            logger.error("Speed test failed: %s", exc)
            return None

        self.last_result = result
        logger.info("Speed: %.2f Mbps", result.speed_mbps)
        await self._send(result.to_message(self.device_id))
        return result

    async def run(self) -> None:
        """Connect, listen, and reconnect until stopped or rejected."""
        self._running = True
        try:
            while self._running:
                try:
                    if await self.connect():
                        await self.listen()
                except ProbeAuthError as exc:
                    logger.error("Server rejected token: %s", exc)
                    self._running = False
                    raise
                if not self._running:
                    break
                logger.info("Reconnecting in %.0fs...", self.config.reconnect_interval)
                await asyncio.sleep(self.config.reconnect_interval)
        finally:
            await self.close()

    async def stop(self) -> None:
        self._running = False
        await self.disconnect()

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._connected = False

    async def close(self) -> None:
        await self.disconnect()
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.test_timeout)
        return self._http

    @property
    def connected(self) -> bool:
        return self._connected
