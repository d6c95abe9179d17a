"""HTTP server for ``clawcontrol serve``.

Mounts the task board router under ``/api`` and runs the notification
dispatcher for the lifetime of the app.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clawcontrol import __version__
from clawcontrol.board.api import router as board_router
from clawcontrol.board.dispatcher import NotificationDispatcher
from clawcontrol.board.manager import get_board_manager
from clawcontrol.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, dispatcher_enabled: bool | None = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or get_settings()
    if dispatcher_enabled is None:
        dispatcher_enabled = settings.dispatcher_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        manager = get_board_manager()
        dispatcher = None
        if dispatcher_enabled:
            dispatcher = NotificationDispatcher(manager.notifications, manager.agents, settings)
            await dispatcher.start()
        app.state.dispatcher = dispatcher
        try:
            yield
        finally:
            if dispatcher:
                await dispatcher.stop()

    app = FastAPI(
        title="Claw Control Center",
        description="Task board and notification bridge for agent teams.",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(board_router, prefix="/api")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


def run_server(
    host: str | None = None,
    port: int | None = None,
    dispatcher_enabled: bool | None = None,
) -> None:
    """Start the board server with uvicorn."""
    import uvicorn

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port

    logger.info(f"Claw Control Center on http://{host}:{port} (data: {settings.data_dir})")
    app = create_app(settings, dispatcher_enabled=dispatcher_enabled)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
