"""eventsync webhook API.

FastAPI application receiving provider webhooks (Zoom recording and URL
validation events). Built with an app factory so tests can pass their own
settings.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from eventsync.api.routers import webhooks_router

if TYPE_CHECKING:
    from eventsync.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "eventsync webhooks"
API_DESCRIPTION = """
Provider webhook receiver for the eventsync worker.

- **/webhooks/zoom** - Zoom event notifications (signed)
"""


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. When omitted, settings are
            loaded from the environment on first use.

    Returns:
        Configured FastAPI application.
    """
    version = settings.app_version if settings else "0.1.0"

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
    )

    # Store settings in app state for access in routes
    app.state.settings = settings

    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("eventsync API application created (version=%s)", version)

    return app


def _include_routers(app: FastAPI) -> None:
    """Include API routers."""
    app.include_router(webhooks_router)
