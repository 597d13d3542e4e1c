"""clinicsync HTTP and WebSocket surface.

One FastAPI app serves:
- The WebSocket sync connection (presence, typing, entity rooms, sync events)
- Sync status and cleanup endpoints
- The notification inbox
- SHA claim workflow endpoints
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinicsync.api.container import AppServices
from clinicsync.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from clinicsync.api.routers import (
    notifications_router,
    sync_router,
    sync_ws_router,
    workflows_router,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from clinicsync.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "clinicsync API"
API_DESCRIPTION = """
Real-time synchronization and background workflow core for clinic staff.

## Namespaces

- **/ws/sync** - WebSocket sync connection (`?token=<access token>`)
- **/api/sync/** - Sync status, online users, sync events, cleanup
- **/api/notifications/** - Notification inbox
- **/api/workflows/** - SHA claim workflows

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


def create_app(
    settings: Settings | None = None,
    services: AppServices | None = None,
) -> FastAPI:
    """Build the clinicsync FastAPI app.

    Services are built at startup from settings unless a prebuilt container is
    passed, which is how tests run the app against an isolated database.

    Args:
        settings: Settings instance. Defaults to the cached environment settings
            when the app starts.
        services: Prebuilt service container.

    Returns:
        Configured FastAPI application.
    """
    if services is not None:
        settings = services.settings
    version = settings.app_version if settings else "0.1.0"

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        nonlocal settings
        if settings is None:
            from clinicsync.core.settings import get_settings

            settings = get_settings()
            app.state.settings = settings

        container = services or AppServices.build(settings)
        app.state.services = container
        await container.start()
        try:
            yield
        finally:
            await container.shutdown()
            app.state.services = None

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services

    _add_middleware(app, settings)
    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("clinicsync API application created (version=%s)", version)

    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    # Added last runs first: the request id exists before errors are rendered
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = settings.cors_origins if settings else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    app.include_router(sync_ws_router)
    app.include_router(sync_router, prefix="/api")
    app.include_router(notifications_router, prefix="/api")
    app.include_router(workflows_router, prefix="/api")


__all__ = ["AppServices", "create_app"]
