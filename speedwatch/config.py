"""Server configuration, read from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_TOKENS = ("PHONE001", "PHONE002", "PHONE003", "TEST123")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s: %r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %r, using %s", name, raw, default)
        return default


def _env_tokens(name: str) -> frozenset[str]:
    raw = os.environ.get(name, "")
    tokens = {t.strip() for t in raw.split(",") if t.strip()}
    return frozenset(tokens) if tokens else frozenset(DEFAULT_TOKENS)


@dataclass
class Settings:
    """Coordinator settings.

    Intervals and timeouts are in seconds, sizes in bytes.
    """

    host: str = "0.0.0.0"
    port: int = 8080
    ws_path: str = "/ws"

    # Test cycle
    test_interval: float = 30.0
    test_timeout: float = 15.0
    test_file_size: int = 50_000

    # Auth
    valid_tokens: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_TOKENS))

    # Downstream collector (empty URL disables forwarding)
    collector_url: str = ""
    collector_path: str = "/webhook/ph1"
    collector_timeout: float = 10.0

    # Echo endpoint
    max_upload_bytes: int = 50 * 1024 * 1024

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            host=os.environ.get("SPEEDWATCH_HOST", "0.0.0.0"),
            port=_env_int("SPEEDWATCH_PORT", 8080),
            ws_path=os.environ.get("SPEEDWATCH_WS_PATH", "/ws"),
            test_interval=_env_float("SPEEDWATCH_TEST_INTERVAL", 30.0),
            test_timeout=_env_float("SPEEDWATCH_TEST_TIMEOUT", 15.0),
            test_file_size=_env_int("SPEEDWATCH_TEST_FILE_SIZE", 50_000),
            valid_tokens=_env_tokens("SPEEDWATCH_VALID_TOKENS"),
            collector_url=os.environ.get(
                "SPEEDWATCH_COLLECTOR_URL", os.environ.get("N8N_WEBHOOK_URL", "")
            ),
            collector_path=os.environ.get("SPEEDWATCH_COLLECTOR_PATH", "/webhook/ph1"),
            collector_timeout=_env_float("SPEEDWATCH_COLLECTOR_TIMEOUT", 10.0),
            max_upload_bytes=_env_int("SPEEDWATCH_MAX_UPLOAD_BYTES", 50 * 1024 * 1024),
            log_level=os.environ.get("SPEEDWATCH_LOG_LEVEL", "INFO").upper(),
        )
