"""eventsync core module.

Shared components used by the worker and the webhook API:
- Configuration management
- Cached settings accessor and logging setup
"""

from eventsync.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    Settings,
    SMTPSettings,
    WorkerSettings,
    ZoomSettings,
)
from eventsync.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "SMTPSettings",
    "Settings",
    "WorkerSettings",
    "ZoomSettings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
