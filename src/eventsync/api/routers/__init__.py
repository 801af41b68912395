"""eventsync API routers.

- webhooks: video-conferencing provider callbacks (Zoom)
"""

from eventsync.api.routers.webhooks import router as webhooks_router

__all__ = ["webhooks_router"]
