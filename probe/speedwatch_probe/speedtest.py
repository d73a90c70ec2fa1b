"""Throughput measurement against the server's echo endpoint.

The probe uploads ``file_size`` zero bytes and reads the echoed body back;
the round trip over the payload gives the reported speed.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

import httpx

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """Base error for probe agent failures."""


class SpeedTestError(ProbeError):
    """Raised when the echo request fails or returns an error status."""


@dataclass
class SpeedResult:
    bytes_received: int
    duration_ms: float

    @property
    def speed_mbps(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return (self.bytes_received * 8) / (self.duration_ms / 1000) / 1_000_000

    def to_message(self, device_id: str) -> dict:
        return {
            "type": "speed_result",
            "deviceId": device_id,
            "speedMbps": round(self.speed_mbps, 3),
            "bytes": self.bytes_received,
            "duration": round(self.duration_ms, 1),
        }


async def run_speed_test(
    client: httpx.AsyncClient,
    url: str,
    file_size: int,
    device_id: str = "",
    token: str = "",
    clock: Callable[[], float] = time.perf_counter,
) -> SpeedResult:
    """POST *file_size* bytes to *url* and time the streamed echo."""
    headers = {
        "Content-Type": "application/octet-stream",
        "X-Device-ID": device_id,
        "X-Access-Token": token,
    }
    # Random query parameter defeats intermediate caches
    params = {"r": f"{random.random():.12f}"}
    payload = bytes(file_size)

    start = clock()
    received = 0
    try:
        async with client.stream(
            "POST", url, content=payload, headers=headers, params=params
        ) as response:
            if response.status_code >= 400:
                raise SpeedTestError(f"HTTP {response.status_code}")
            async for chunk in response.aiter_bytes():
                received += len(chunk)
    except httpx.HTTPError as exc:
        raise SpeedTestError(f"Echo request to {url} failed: {exc}") from exc

    duration_ms = (clock() - start) * 1000
    result = SpeedResult(bytes_received=received, duration_ms=duration_ms)
    logger.debug("Echoed %d bytes in %.1f ms", received, duration_ms)
    return result
