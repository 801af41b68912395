"""eventsync worker service entry point.

This module provides the WorkerPool that:
- Builds the meeting sync and notification dispatch workers from settings
- Runs a fixed number of worker loops of each kind
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NoReturn

from eventsync.core.settings import configure_logging, get_settings
from eventsync.db import close_engine
from eventsync.services.email import SMTPEmailTransport
from eventsync.services.meetings import build_providers
from eventsync.services.meetings.store import MeetingStore
from eventsync.services.notifications import NotificationStore
from eventsync.worker.base import ClaimWorker, WorkerConfig
from eventsync.worker.meetings import MeetingSyncWorker
from eventsync.worker.notifications import NotificationDispatchWorker

if TYPE_CHECKING:
    from collections.abc import Mapping

    from eventsync.core.config import Settings
    from eventsync.db.models.base import MeetingProviderKind
    from eventsync.services.meetings.provider import MeetingProvider

logger = logging.getLogger(__name__)


@dataclass
class PoolConfig:
    """Configuration for the worker process.

    Attributes:
        instance_id: Prefix of the worker ids of this process.
        shutdown_timeout: Seconds to wait for in-flight items on shutdown.
    """

    instance_id: str = field(default_factory=lambda: f"eventsync-{uuid.uuid4().hex[:8]}")
    shutdown_timeout: float = 30.0


class WorkerPool:
    """Runs a set of worker loops until told to stop.

    Example:
        pool = WorkerPool([worker_a, worker_b], PoolConfig())
        await pool.start()
        ...
        await pool.stop()
    """

    def __init__(self, workers: list[ClaimWorker], config: PoolConfig | None = None) -> None:
        self.workers = workers
        self.config = config or PoolConfig()
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Start every worker loop as its own task."""
        logger.info(
            "Worker pool starting: instance_id=%s, workers=%d",
            self.config.instance_id,
            len(self.workers),
        )
        self._tasks = [
            asyncio.create_task(worker.run(), name=worker.worker_id) for worker in self.workers
        ]

    async def wait(self) -> None:
        """Wait for all loops to exit."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Stop all loops, cancelling the ones that outlive the shutdown timeout."""
        for worker in self.workers:
            await worker.stop()

        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=self.config.shutdown_timeout)
        if pending:
            logger.warning(
                "%d worker(s) did not stop within %.0fs, cancelling",
                len(pending),
                self.config.shutdown_timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Worker pool stopped: instance_id=%s", self.config.instance_id)


def build_workers(
    settings: Settings,
    instance_id: str,
    providers: Mapping[MeetingProviderKind, MeetingProvider],
) -> list[ClaimWorker]:
    """Create the configured number of workers of each kind."""
    worker_settings = settings.worker
    lease = worker_settings.lease_seconds

    meeting_store = MeetingStore(lease_seconds=lease)
    notification_store = NotificationStore(lease_seconds=lease)
    transport = SMTPEmailTransport(settings.smtp)

    workers: list[ClaimWorker] = []
    for n in range(worker_settings.meeting_workers):
        workers.append(
            MeetingSyncWorker(
                meeting_store,
                providers,
                WorkerConfig(
                    worker_id=f"{instance_id}-meetings-{n}",
                    pause_on_none=worker_settings.meetings_pause_on_none,
                    pause_on_error=worker_settings.meetings_pause_on_error,
                ),
            )
        )
    for n in range(worker_settings.notification_workers):
        workers.append(
            NotificationDispatchWorker(
                notification_store,
                transport,
                WorkerConfig(
                    worker_id=f"{instance_id}-notifications-{n}",
                    pause_on_none=worker_settings.notifications_pause_on_none,
                    pause_on_error=worker_settings.notifications_pause_on_error,
                ),
                rcpts_whitelist=settings.smtp.rcpts_whitelist,
            )
        )
    return workers


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None
_shutdown_loop: asyncio.AbstractEventLoop | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None and _shutdown_loop is not None:
        _shutdown_loop.call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker process.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    settings = get_settings()
    config = PoolConfig(
        instance_id=os.environ.get("WORKER_ID", f"eventsync-{uuid.uuid4().hex[:8]}"),
        shutdown_timeout=settings.worker.shutdown_timeout,
    )

    async with contextlib.AsyncExitStack() as stack:
        providers = build_providers(settings.zoom)
        for provider in providers.values():
            await stack.enter_async_context(provider)
        if not providers:
            logger.warning("No meeting provider configured; meeting syncs will fail")

        pool = WorkerPool(build_workers(settings, config.instance_id, providers), config)
        await pool.start()

        await shutdown_event.wait()
        await pool.stop()

    await close_engine()


def run() -> NoReturn:
    """Run the worker process.

    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Loads configuration from the environment
    - Runs the worker pool until a shutdown signal arrives
    """
    global _shutdown_event

    configure_logging()

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("eventsync worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event, _shutdown_loop
        _shutdown_loop = asyncio.get_running_loop()
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("eventsync worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
