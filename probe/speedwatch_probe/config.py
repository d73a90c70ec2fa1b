"""Configuration for the speedwatch probe agent."""

from __future__ import annotations

import hashlib
import json
import logging
import socket
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class ProbeConfig:
    """Probe agent configuration, loaded from config.json."""

    device_id: str = ""
    token: str = ""
    server_url: str = "ws://localhost:8080/ws"
    speed_test_url: str = "http://localhost:8080/speed-test"

    # Fixed-interval reconnect, seconds
    reconnect_interval: float = 5.0
    handshake_timeout: float = 10.0

    # Speed test
    test_timeout: float = 15.0
    default_file_size: int = 50_000

    @classmethod
    def load(cls, path: str | Path) -> ProbeConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)

    def generate_id(self) -> str:
        """Generate a stable device ID from the hostname."""
        digest = hashlib.sha1(socket.gethostname().encode()).hexdigest()
        return f"device_{digest[:8]}"
