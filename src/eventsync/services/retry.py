"""Retry classification shared by the meeting and notification workers.

Every failure a worker sees goes through ``classify``. The decision says
whether the item should be released for another attempt or parked as a
terminal failure, and how long the scope should be left alone.
"""

from __future__ import annotations

from dataclasses import dataclass

from eventsync.services.email import EmailPermanentError
from eventsync.services.meetings.provider import (
    InvalidDurationError,
    ProviderClientError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
)


class PermanentFailure(Exception):
    """A local condition that retrying cannot fix (e.g. missing attachment data)."""

    pass


# Failures that will not change on retry without someone editing the record
_TERMINAL_ERRORS: tuple[type[BaseException], ...] = (
    ProviderClientError,
    InvalidDurationError,
    ProviderNotConfiguredError,
    EmailPermanentError,
    PermanentFailure,
)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying a failure.

    Attributes:
        retryable: Whether the item goes back to the queue.
        retry_after: Minimum delay in seconds before the next attempt, when
            the failure dictates one (rate limits).
    """

    retryable: bool
    retry_after: float | None = None

    @property
    def terminal(self) -> bool:
        return not self.retryable


RETRY = RetryDecision(retryable=True)
TERMINAL = RetryDecision(retryable=False)


def classify(error: BaseException) -> RetryDecision:
    """Decide whether a failure is worth retrying.

    Token, server and network failures, transient email failures and any
    unexpected exception are retryable. Rate limits are retryable after
    the provider's delay. Client-side rejections are terminal.
    """
    if isinstance(error, ProviderRateLimitError):
        return RetryDecision(retryable=True, retry_after=error.retry_after)
    if isinstance(error, _TERMINAL_ERRORS):
        return TERMINAL
    return RETRY
