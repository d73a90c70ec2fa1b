"""speedwatch coordinator server.

Exposes:
  WS   /ws                probe coordination channel
  POST /speed-test        raw payload echo used for throughput measurement
  GET  /api/devices       connected devices and their test state
  GET  /health            liveness check

Start with::

    python -m speedwatch.server
    # or
    uvicorn speedwatch.server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from speedwatch import __version__
from speedwatch.config import Settings
from speedwatch.coordinator.manager import ProbeManager

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────
# Response models
# ──────────────────────────────────────────────────────────────────

class DeviceInfo(BaseModel):
    id: str
    lastSeen: int
    connectedAt: int
    isOnline: bool
    waitingForTest: bool
    state: str


class HealthStatus(BaseModel):
    status: str
    devices: int
    scheduler_running: bool


def create_app(settings: Settings | None = None, manager: ProbeManager | None = None) -> FastAPI:
    """Build the FastAPI app around a :class:`ProbeManager`."""
    settings = settings or Settings.from_env()
    manager = manager or ProbeManager(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await manager.start()
        try:
            yield
        finally:
            await manager.stop()

    app = FastAPI(title="speedwatch", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager

    # Browser probes call the echo endpoint cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def probe_ws(websocket: WebSocket) -> None:
        await manager.handle_connection(websocket)

    app.add_api_websocket_route(settings.ws_path, probe_ws)

    @app.post("/speed-test")
    async def speed_test(request: Request):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")

        body = await request.body()
        if len(body) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Payload too large")

        return Response(
            content=body,
            media_type="application/octet-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/api/devices", response_model=list[DeviceInfo])
    async def list_devices():
        return await manager.list_devices()

    @app.get("/health", response_model=HealthStatus)
    async def health():
        return HealthStatus(
            status="ok",
            devices=len(manager.registry),
            scheduler_running=manager.scheduler.running,
        )

    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting speedwatch on %s:%d (ws path %s)", settings.host, settings.port, settings.ws_path)
    uvicorn.run(app, host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
