"""speedwatch probe agent entry point.

Usage:
    python -m speedwatch_probe [--config CONFIG_PATH] [--server URL] [--token TOKEN]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .client import ProbeAuthError, ProbeClient
from .config import ProbeConfig


def main() -> None:
    parser = argparse.ArgumentParser(description="speedwatch probe agent")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.speedwatch-probe/config.json if present)",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Coordinator WebSocket URL (overrides config)",
    )
    parser.add_argument(
        "--speed-test-url",
        default=None,
        help="Echo endpoint URL (overrides config)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Access token (overrides config)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger(__name__)

    config_path = args.config
    if config_path is None:
        candidate = Path.home() / ".speedwatch-probe" / "config.json"
        if candidate.exists():
            config_path = str(candidate)

    if config_path:
        config = ProbeConfig.load(config_path)
        log.info("Loaded config from %s", config_path)
    else:
        config = ProbeConfig()
        log.warning("No config found, using defaults")

    if args.server:
        config.server_url = args.server
    if args.speed_test_url:
        config.speed_test_url = args.speed_test_url
    if args.token:
        config.token = args.token

    if not config.token:
        log.error("No access token configured (use --token)")
        sys.exit(2)

    client = ProbeClient(config)
    loop = asyncio.new_event_loop()

    def _shutdown(sig: int) -> None:
        log.info("Received signal %d, shutting down", sig)
        loop.create_task(client.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    exit_code = 0
    try:
        loop.run_until_complete(client.run())
    except ProbeAuthError:
        exit_code = 1
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(client.close())
        loop.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
