"""
Health API - liveness, readiness and status endpoints.

Serves the probes of the controller Deployment with FastAPI and uvicorn.
"""

import logging
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import APIConfig

logger = logging.getLogger(__name__)


class ControllerStatus(BaseModel):
    """Snapshot of the controller state."""

    identity: str
    is_leader: bool = False
    synced: bool = False
    queue_depth: int = Field(default=0, ge=0)
    workers: int = Field(default=0, ge=0)


StatusProvider = Callable[[], ControllerStatus]


def create_app(status_provider: StatusProvider) -> FastAPI:
    """
    Create the FastAPI application.

    Routes:
    - ``GET /``: service banner
    - ``GET /healthz``: liveness
    - ``GET /readyz``: 200 once the leader's caches are synced, 503 before;
      standby replicas are always ready
    - ``GET /api/v1/status``: ControllerStatus
    """
    app = FastAPI(
        title="Volume Replicator",
        description="Creates VolumeReplications for PersistentVolumeClaims",
        version="1.0.0",
    )

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "volume-replicator"}

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        status = status_provider()
        if status.is_leader and not status.synced:
            return JSONResponse(
                status_code=503,
                content={"status": "waiting for cache sync"},
            )
        return {"status": "ready"}

    @app.get("/api/v1/status", response_model=ControllerStatus)
    async def controller_status():
        return status_provider()

    return app


class HealthServer:
    """Runs the health API on uvicorn."""

    def __init__(self, config: APIConfig, status_provider: StatusProvider):
        self.config = config
        self.app = create_app(status_provider)
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting health API on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping health API")
        if self.server:
            self.server.should_exit = True
