"""Pulse FastAPI application entrypoint."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .api.stream import router as stream_router
from .api.tasks import router as tasks_router
from .core.hub import Hub
from .util.logs import configure_logging
from .util.settings import Settings


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app; the hub's pool and reaper live for the app's lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = settings or Settings.from_env()
        configure_logging(resolved.log_level)
        hub = Hub(resolved)
        hub.start()
        app.state.hub = hub
        try:
            yield
        finally:
            app.state.hub = None
            hub.stop()

    app = FastAPI(title="Pulse", version="0.1.0", lifespan=lifespan)
    app.include_router(stream_router, prefix="/api")
    app.include_router(tasks_router, prefix="/api")

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        """Basic health endpoint for readiness probes."""
        return {"status": "ok"}

    return app


app = create_app()
