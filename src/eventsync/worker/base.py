"""Claim-and-execute worker loop shared by the meeting and notification workers.

Each worker instance:
- Polls the store's scopes and claims at most one item per scope
- Processes the item and turns failures into outcomes via ``classify``
- Finalizes the outcome with its claim token
- Skips scopes that recently failed with a retryable error until their
  cooldown elapses
- Stops cooperatively between claim cycles
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Generic, TypeVar

from eventsync.services.claim_store import Outcome, OutcomeKind
from eventsync.services.email import EmailError
from eventsync.services.meetings.provider import ProviderError
from eventsync.services.retry import PermanentFailure, classify

if TYPE_CHECKING:
    from collections.abc import Callable

    from eventsync.services.claim_store import ClaimedItem, WorkClaimStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures the workers expect; anything else is logged with a traceback
_EXPECTED_ERRORS = (ProviderError, EmailError, PermanentFailure)


@dataclass
class WorkerConfig:
    """Configuration for one worker loop.

    Attributes:
        worker_id: Unique identifier recorded on claimed rows.
        pause_on_none: Seconds to idle when nothing was claimable.
        pause_on_error: Seconds to back off after a loop error, and how long
            a scope is skipped after a retryable failure without a delay hint.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    pause_on_none: float = 30.0
    pause_on_error: float = 30.0


class ClaimWorker(ABC, Generic[T]):
    """Base class for workers pulling from a WorkClaimStore."""

    kind = "worker"

    def __init__(
        self,
        store: WorkClaimStore[T],
        config: WorkerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config or WorkerConfig()
        self._clock = clock
        self._shutdown_event = asyncio.Event()
        self._cooldowns: dict[str, float] = {}
        self._started_at: datetime | None = None
        self.items_succeeded = 0
        self.items_retried = 0
        self.items_failed = 0

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @abstractmethod
    async def process(self, item: ClaimedItem[T]) -> Outcome:
        """Execute one claimed item; raise to report a failure."""

    async def run(self) -> None:
        """Run until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info("%s worker starting: worker_id=%s", self.kind, self.worker_id)

        while not self._shutdown_event.is_set():
            try:
                handled = await self.run_once()
            except Exception as e:
                logger.exception("Error in %s worker loop: %s", self.kind, e)
                await self._pause(self.config.pause_on_error)
                continue

            if handled == 0:
                await self._pause(self.config.pause_on_none)

        logger.info(
            "%s worker stopped: worker_id=%s, succeeded=%d, retried=%d, failed=%d",
            self.kind,
            self.worker_id,
            self.items_succeeded,
            self.items_retried,
            self.items_failed,
        )

    async def stop(self) -> None:
        """Request graceful shutdown after the current item."""
        logger.info("%s worker shutdown requested: worker_id=%s", self.kind, self.worker_id)
        self._shutdown_event.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)

    def _in_cooldown(self, scope: str) -> bool:
        until = self._cooldowns.get(scope)
        if until is None:
            return False
        if self._clock() >= until:
            del self._cooldowns[scope]
            return False
        return True

    async def run_once(self) -> int:
        """Make one pass over all scopes.

        Returns:
            Number of items processed.
        """
        scopes = await self.store.scopes()
        # Spread competing workers over scopes
        random.shuffle(scopes)

        handled = 0
        for scope in scopes:
            if self._shutdown_event.is_set():
                break
            if self._in_cooldown(scope):
                continue

            item = await self.store.claim_next(scope, self.worker_id)
            if item is None:
                continue

            await self._handle(item)
            handled += 1
        return handled

    async def _handle(self, item: ClaimedItem[T]) -> None:
        try:
            outcome = await self.process(item)
        except Exception as e:
            outcome = self.failure_outcome(item, e)

        if outcome.kind is OutcomeKind.RETRY:
            delay = outcome.retry_after or self.config.pause_on_error
            self._cooldowns[item.scope] = self._clock() + delay

        applied = await self.store.finalize(item, outcome)
        if not applied:
            logger.warning(
                "Outcome discarded, claim no longer held: %s id=%s, claim_token=%s",
                self.kind,
                item.item_id,
                item.claim_token,
            )
            return

        if outcome.kind is OutcomeKind.SUCCEEDED:
            self.items_succeeded += 1
        elif outcome.kind is OutcomeKind.RETRY:
            self.items_retried += 1
        else:
            self.items_failed += 1

    def failure_outcome(self, item: ClaimedItem[T], error: Exception) -> Outcome:
        """Turn a processing failure into a retry or terminal outcome."""
        decision = classify(error)
        text = str(error) or error.__class__.__name__

        if not isinstance(error, _EXPECTED_ERRORS):
            logger.exception(
                "Unexpected error processing %s: id=%s, scope=%s",
                self.kind,
                item.item_id,
                item.scope,
            )

        if decision.retryable:
            logger.warning(
                "%s failed, will retry: id=%s, scope=%s, attempt=%d, retry_after=%s, error=%s",
                self.kind,
                item.item_id,
                item.scope,
                item.attempt,
                decision.retry_after,
                text,
            )
            return Outcome.retry(text, decision.retry_after)

        logger.error(
            "%s failed permanently: id=%s, scope=%s, attempt=%d, error=%s",
            self.kind,
            item.item_id,
            item.scope,
            item.attempt,
            text,
        )
        return Outcome.terminal(text)
