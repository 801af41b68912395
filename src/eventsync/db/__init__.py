"""eventsync database module.

The meeting and notification queues live in PostgreSQL, accessed through
SQLAlchemy's async engine on the psycopg driver. One engine is shared by
every worker loop of a process; it is created lazily from settings so that
importing the stores never opens a connection.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from eventsync.core.config import DatabaseSettings

ASYNC_DRIVER_SCHEME = "postgresql+psycopg://"

_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str) -> str:
    """Point a plain postgres:// or postgresql:// URL at the psycopg driver."""
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return ASYNC_DRIVER_SCHEME + url[len(scheme) :]
    return url


def build_engine(database: DatabaseSettings) -> AsyncEngine:
    """Create an engine sized for a pool of claim workers."""
    return create_async_engine(
        async_database_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        # Workers idle between polls; drop connections the server closed meanwhile
        pool_pre_ping=True,
        echo=database.echo,
    )


def _get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _engine, _sessionmaker

    if _sessionmaker is None:
        from eventsync.core.settings import get_settings

        _engine = build_engine(get_settings().database)
        _sessionmaker = async_sessionmaker(bind=_engine, expire_on_commit=False)
    return _sessionmaker


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session on the shared engine.

    Callers commit explicitly; an exception escaping the block rolls the
    transaction back. This is the default session factory of the stores.

    Usage:
        async with get_async_session() as session:
            row = await session.scalar(select(Meeting).limit(1))
            await session.commit()
    """
    session = _get_sessionmaker()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the shared engine, releasing pooled connections."""
    global _engine, _sessionmaker

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
