"""eventsync API service entry point.

Provides the application instance for ASGI servers (uvicorn) and a run()
function for the eventsync-api console script.
"""

import logging

from eventsync.api import create_app

logger = logging.getLogger(__name__)

# uvicorn references this as eventsync.api.main:app
app = create_app()


def run() -> None:
    """Run the webhook API server using uvicorn."""
    import uvicorn

    from eventsync.core.settings import configure_logging, get_settings

    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("Starting eventsync API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "eventsync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
