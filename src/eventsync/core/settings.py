"""Process-wide settings accessor and logging setup.

Usage:
    from eventsync.core.settings import get_settings

    settings = get_settings()
    if settings.zoom.enabled:
        ...

Settings are read from the environment once per process. Tests that
change the environment call clear_settings_cache() in between.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache

from pydantic import ValidationError

from eventsync.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _describe_errors(error: ValidationError) -> str:
    """One line per invalid field, e.g. '  - zoom.timeout: Input should be > 0'."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "settings"
        lines.append(f"  - {location}: {item['msg']}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the settings.

    Raises:
        SystemExit: On any configuration error, so a misconfigured worker
            never starts claiming work.
    """
    logger.info("Loading application settings from environment")
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Configuration validation failed:\n%s", _describe_errors(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e
    return settings


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but returns None instead of exiting."""
    try:
        return get_settings()
    except SystemExit:
        return None


def configure_logging(default_level: str | None = None) -> str:
    """Set up root logging for a service process.

    LOG_LEVEL in the environment wins over ``default_level``; the settings'
    log level is used when neither is given.

    Returns:
        The level name in effect.
    """
    level = os.environ.get("LOG_LEVEL") or default_level or get_settings().log_level
    level = level.upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    return level
