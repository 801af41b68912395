"""Claim-based work queue stores.

Both worker kinds pull from a store implementing ``WorkClaimStore``:

- ``scopes()`` lists scopes that currently have claimable work
- ``claim_next(scope, worker_id)`` hands out at most one item per scope
- ``finalize(item, outcome)`` writes the result back, once

Each claim carries a unique token and a lease. A worker that crashes leaves
its item claimed until the lease lapses, after which any worker may claim
it again. Finalizing with a token that no longer owns the row is a no-op,
which makes finalize safe to repeat.

Two implementations share these semantics:

- ``PgClaimStore``: PostgreSQL, using a per-scope transaction-level
  advisory lock plus SELECT ... FOR UPDATE SKIP LOCKED
- ``MemoryClaimStore``: in-process, for tests and single-process setups
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from sqlalchemy import and_, distinct, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from eventsync.db.models.base import WorkStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence
    from contextlib import AbstractAsyncContextManager

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute
    from sqlalchemy.sql.elements import ColumnElement

    SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LEASE_SECONDS = 300


class ClaimStoreError(Exception):
    """Base exception for claim store operations."""

    pass


@dataclass(frozen=True)
class ClaimedItem(Generic[T]):
    """Snapshot of a claimed work item.

    Attributes:
        item_id: Primary key of the claimed row.
        scope: Scope the item belongs to.
        claim_token: Unique per claim; finalize only applies while it matches.
        worker_id: Worker holding the claim.
        attempt: Attempt number, starting at 1.
        revision: Row revision when claimed.
        payload: Domain view of the row.
    """

    item_id: uuid.UUID
    scope: str
    claim_token: uuid.UUID
    worker_id: str
    attempt: int
    revision: int
    payload: T


class OutcomeKind(str, enum.Enum):
    """How a claimed item ended."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class Outcome:
    """Result of processing a claimed item.

    ``changes`` are attribute updates applied to the row (provider ids,
    processed timestamps, ...). ``purge`` removes the row on success.
    """

    kind: OutcomeKind
    changes: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    retry_after: float | None = None
    purge: bool = False

    @classmethod
    def succeeded(cls, changes: Mapping[str, Any] | None = None, *, purge: bool = False) -> Outcome:
        return cls(OutcomeKind.SUCCEEDED, changes=dict(changes or {}), purge=purge)

    @classmethod
    def retry(cls, error: str, retry_after: float | None = None) -> Outcome:
        return cls(OutcomeKind.RETRY, error=error, retry_after=retry_after)

    @classmethod
    def terminal(cls, error: str, changes: Mapping[str, Any] | None = None) -> Outcome:
        return cls(OutcomeKind.TERMINAL, changes=dict(changes or {}), error=error)


class WorkClaimStore(ABC, Generic[T]):
    """Persistence boundary used by the workers."""

    @abstractmethod
    async def scopes(self) -> list[str]:
        """Return the scopes that currently have claimable work."""

    @abstractmethod
    async def claim_next(self, scope: str, worker_id: str) -> ClaimedItem[T] | None:
        """Claim one eligible item in ``scope``, or return None.

        None is also returned while another live claim exists in the scope.
        """

    @abstractmethod
    async def finalize(self, item: ClaimedItem[T], outcome: Outcome) -> bool:
        """Apply ``outcome`` if ``item`` still owns its row.

        Returns:
            True if the outcome was applied, False if the claim was stale
            (already finalized, or lost to lease expiry).
        """


def _release_claim(record: Any) -> None:
    record.claim_token = None
    record.claimed_by = None
    record.claimed_at = None
    record.lease_expires_at = None


def _apply_outcome(
    record: Any,
    item: ClaimedItem[Any],
    outcome: Outcome,
    now: datetime,
    *,
    on_stale: Callable[[Any], None],
) -> bool:
    """Apply an outcome to a row-like object owned by ``item``.

    If the row changed since it was claimed, the outcome is still recorded
    but the row goes back to PENDING so the newer revision gets processed.

    Returns:
        True if the caller should delete the record.
    """
    stale = record.revision != item.revision
    _release_claim(record)

    if outcome.kind is OutcomeKind.SUCCEEDED:
        record.last_error = None
        record.not_before = None
        if outcome.purge and not stale:
            return True
        for name, value in outcome.changes.items():
            setattr(record, name, value)
        if stale:
            record.status = WorkStatus.PENDING
            on_stale(record)
        else:
            record.status = WorkStatus.DONE
        return False

    for name, value in outcome.changes.items():
        setattr(record, name, value)
    record.last_error = outcome.error

    if outcome.kind is OutcomeKind.RETRY:
        record.status = WorkStatus.PENDING
        record.not_before = (
            now + timedelta(seconds=outcome.retry_after) if outcome.retry_after else None
        )
        return False

    # Terminal: park the row unless someone changed it meanwhile
    record.not_before = None
    record.status = WorkStatus.PENDING if stale else WorkStatus.FAILED
    return False


# =============================================================================
# PostgreSQL
# =============================================================================


class PgClaimStore(WorkClaimStore[T]):
    """PostgreSQL-backed claim store.

    Claiming runs in one short transaction:
    1. ``pg_try_advisory_xact_lock(hashtext(table:scope))`` serialises
       claimers of the same scope (others back off immediately)
    2. A live claim in the scope means the scope is busy
    3. One eligible row is selected FOR UPDATE SKIP LOCKED and stamped with
       a fresh claim token and lease

    Subclasses bind the ORM model and convert rows to payloads.

    Attributes:
        session_factory: Callable returning an async session context manager.
        lease_seconds: Claim lease length.
    """

    model: ClassVar[type[Any]]

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> None:
        if session_factory is None:
            from eventsync.db import get_async_session

            session_factory = get_async_session
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds

    # -- hooks ----------------------------------------------------------------

    @property
    @abstractmethod
    def _id_column(self) -> InstrumentedAttribute[uuid.UUID]:
        """Primary key column of the model."""

    def _claim_order(self) -> Sequence[ColumnElement[Any]]:
        return (self.model.created_at,)

    def _claim_options(self) -> Sequence[Any]:
        return ()

    @abstractmethod
    def _to_payload(self, row: Any) -> T:
        """Build the payload handed to workers."""

    def _on_stale(self, row: Any) -> None:
        """Adjust a row whose successful outcome was overtaken by a newer revision."""

    def _on_finalized(self, row: Any, outcome: Outcome, now: datetime) -> None:
        """Hook for model-specific bookkeeping after an outcome is applied."""

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _eligible(self, now: datetime) -> ColumnElement[bool]:
        model = self.model
        return or_(
            and_(
                model.status == WorkStatus.PENDING,
                or_(model.not_before.is_(None), model.not_before <= now),
            ),
            and_(
                model.status == WorkStatus.CLAIMED,
                model.lease_expires_at <= now,
            ),
        )

    # -- contract -------------------------------------------------------------

    async def scopes(self) -> list[str]:
        now = self._now()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(distinct(self.model.scope_id)).where(self._eligible(now))
                )
                return [scope for (scope,) in result.all()]
        except SQLAlchemyError as e:
            logger.error("Failed to list scopes: table=%s, error=%s", self.model.__tablename__, e)
            raise ClaimStoreError(f"Failed to list scopes: {e}") from e

    async def claim_next(self, scope: str, worker_id: str) -> ClaimedItem[T] | None:
        model = self.model
        now = self._now()

        try:
            async with self.session_factory() as session:
                lock_key = f"{model.__tablename__}:{scope}"
                locked = await session.scalar(
                    select(func.pg_try_advisory_xact_lock(func.hashtext(lock_key)))
                )
                if not locked:
                    await session.rollback()
                    return None

                # At most one live claim per scope
                busy = await session.scalar(
                    select(self._id_column)
                    .where(
                        model.scope_id == scope,
                        model.status == WorkStatus.CLAIMED,
                        model.lease_expires_at > now,
                    )
                    .limit(1)
                )
                if busy is not None:
                    await session.rollback()
                    return None

                stmt = (
                    select(model)
                    .where(model.scope_id == scope, self._eligible(now))
                    .order_by(*self._claim_order())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                for option in self._claim_options():
                    stmt = stmt.options(option)

                row = await session.scalar(stmt)
                if row is None:
                    await session.rollback()
                    return None

                if row.status == WorkStatus.CLAIMED:
                    logger.warning(
                        "Reclaiming expired claim: table=%s, id=%s, previous_worker=%s",
                        model.__tablename__,
                        getattr(row, self._id_column.key),
                        row.claimed_by,
                    )

                token = uuid.uuid4()
                row.status = WorkStatus.CLAIMED
                row.claim_token = token
                row.claimed_by = worker_id
                row.claimed_at = now
                row.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
                row.attempts += 1

                item = ClaimedItem(
                    item_id=getattr(row, self._id_column.key),
                    scope=scope,
                    claim_token=token,
                    worker_id=worker_id,
                    attempt=row.attempts,
                    revision=row.revision,
                    payload=self._to_payload(row),
                )
                await session.commit()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to claim: table=%s, scope=%s, error=%s", model.__tablename__, scope, e
            )
            raise ClaimStoreError(f"Failed to claim from scope {scope}: {e}") from e

        logger.info(
            "Item claimed: table=%s, id=%s, scope=%s, worker_id=%s, attempt=%d",
            model.__tablename__,
            item.item_id,
            scope,
            worker_id,
            item.attempt,
        )
        return item

    async def finalize(self, item: ClaimedItem[T], outcome: Outcome) -> bool:
        model = self.model
        now = self._now()

        try:
            async with self.session_factory() as session:
                row = await session.scalar(
                    select(model)
                    .where(
                        self._id_column == item.item_id,
                        model.claim_token == item.claim_token,
                        model.status == WorkStatus.CLAIMED,
                    )
                    .with_for_update()
                )
                if row is None:
                    await session.rollback()
                    logger.info(
                        "Stale finalize ignored: table=%s, id=%s, claim_token=%s",
                        model.__tablename__,
                        item.item_id,
                        item.claim_token,
                    )
                    return False

                purge = _apply_outcome(row, item, outcome, now, on_stale=self._on_stale)
                if purge:
                    await session.delete(row)
                else:
                    self._on_finalized(row, outcome, now)
                await session.commit()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to finalize: table=%s, id=%s, error=%s", model.__tablename__, item.item_id, e
            )
            raise ClaimStoreError(f"Failed to finalize {item.item_id}: {e}") from e

        logger.info(
            "Item finalized: table=%s, id=%s, outcome=%s, purged=%s",
            model.__tablename__,
            item.item_id,
            outcome.kind.value,
            purge,
        )
        return True


# =============================================================================
# In-memory
# =============================================================================


class MemoryRecord:
    """Mutable row of the in-memory store.

    Carries the claim columns plus arbitrary domain attributes, so the same
    payload builders work for ORM rows and memory records.
    """

    def __init__(self, item_id: uuid.UUID, scope_id: str, seq: int, **fields: Any) -> None:
        self.item_id = item_id
        self.scope_id = scope_id
        self.seq = seq
        self.status = WorkStatus.PENDING
        self.claim_token: uuid.UUID | None = None
        self.claimed_by: str | None = None
        self.claimed_at: datetime | None = None
        self.lease_expires_at: datetime | None = None
        self.not_before: datetime | None = None
        self.attempts = 0
        self.last_error: str | None = None
        self.revision = 1
        for name, value in fields.items():
            setattr(self, name, value)

    def __repr__(self) -> str:
        return (
            f"MemoryRecord(item_id={self.item_id}, scope_id={self.scope_id!r}, "
            f"status={self.status.value}, revision={self.revision})"
        )


class MemoryClaimStore(WorkClaimStore[T]):
    """In-process claim store with the same contract as PgClaimStore.

    One asyncio.Lock guards every operation, which gives the same
    one-winner guarantee as the database locks within a single event loop.

    Example:
        store = MemoryClaimStore(lambda r: r.text)
        await store.add("group-1", text="hello")
        item = await store.claim_next("group-1", "worker-1")
    """

    def __init__(
        self,
        to_payload: Callable[[MemoryRecord], T],
        *,
        id_field: str | None = None,
        defaults: Mapping[str, Any] | None = None,
        sort_key: Callable[[MemoryRecord], Any] | None = None,
        stale_changes: Mapping[str, Any] | None = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            to_payload: Builds the worker payload from a record.
            id_field: Extra attribute name mirroring ``item_id`` (e.g. 'meeting_id').
            defaults: Attribute defaults for new records.
            sort_key: Claim order within a scope (default: insertion order).
            stale_changes: Attributes set when a success is overtaken by a newer revision.
            lease_seconds: Claim lease length.
            clock: Returns the current aware datetime.
        """
        self._to_payload = to_payload
        self._id_field = id_field
        self._defaults = dict(defaults or {})
        self._sort_key = sort_key or (lambda r: r.seq)
        self._stale_changes = dict(stale_changes or {})
        self.lease_seconds = lease_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: dict[uuid.UUID, MemoryRecord] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    # -- application side -----------------------------------------------------

    async def add(self, scope: str, **fields: Any) -> uuid.UUID:
        """Insert a pending record and return its id."""
        item_id = fields.pop("item_id", None) or uuid.uuid4()
        values = {**self._defaults, **fields}
        if self._id_field:
            values[self._id_field] = item_id
        async with self._lock:
            self._records[item_id] = MemoryRecord(item_id, scope, next(self._seq), **values)
        return item_id

    async def update(self, item_id: uuid.UUID, **changes: Any) -> bool:
        """Change a record from the application side, bumping its revision.

        Finished records go back to PENDING so the change gets processed.
        """
        async with self._lock:
            record = self._records.get(item_id)
            if record is None:
                return False
            for name, value in changes.items():
                setattr(record, name, value)
            record.revision += 1
            if record.status in (WorkStatus.DONE, WorkStatus.FAILED):
                record.status = WorkStatus.PENDING
                record.not_before = None
            return True

    def get(self, item_id: uuid.UUID) -> MemoryRecord | None:
        return self._records.get(item_id)

    def records(self) -> list[MemoryRecord]:
        return sorted(self._records.values(), key=lambda r: r.seq)

    # -- contract -------------------------------------------------------------

    def _is_eligible(self, record: MemoryRecord, now: datetime) -> bool:
        if record.status is WorkStatus.PENDING:
            return record.not_before is None or record.not_before <= now
        if record.status is WorkStatus.CLAIMED:
            return record.lease_expires_at is not None and record.lease_expires_at <= now
        return False

    def _has_live_claim(self, scope: str, now: datetime) -> bool:
        return any(
            r.scope_id == scope
            and r.status is WorkStatus.CLAIMED
            and r.lease_expires_at is not None
            and r.lease_expires_at > now
            for r in self._records.values()
        )

    async def scopes(self) -> list[str]:
        now = self._clock()
        async with self._lock:
            return sorted({r.scope_id for r in self._records.values() if self._is_eligible(r, now)})

    async def claim_next(self, scope: str, worker_id: str) -> ClaimedItem[T] | None:
        async with self._lock:
            now = self._clock()
            if self._has_live_claim(scope, now):
                return None

            candidates = [
                r
                for r in self._records.values()
                if r.scope_id == scope and self._is_eligible(r, now)
            ]
            if not candidates:
                return None
            record = min(candidates, key=self._sort_key)

            token = uuid.uuid4()
            record.status = WorkStatus.CLAIMED
            record.claim_token = token
            record.claimed_by = worker_id
            record.claimed_at = now
            record.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
            record.attempts += 1

            return ClaimedItem(
                item_id=record.item_id,
                scope=scope,
                claim_token=token,
                worker_id=worker_id,
                attempt=record.attempts,
                revision=record.revision,
                payload=self._to_payload(record),
            )

    async def finalize(self, item: ClaimedItem[T], outcome: Outcome) -> bool:
        async with self._lock:
            record = self._records.get(item.item_id)
            if (
                record is None
                or record.status is not WorkStatus.CLAIMED
                or record.claim_token != item.claim_token
            ):
                logger.debug("Stale finalize ignored: id=%s", item.item_id)
                return False

            purge = _apply_outcome(
                record, item, outcome, self._clock(), on_stale=self._apply_stale_changes
            )
            if purge:
                del self._records[item.item_id]
            return True

    def _apply_stale_changes(self, record: MemoryRecord) -> None:
        for name, value in self._stale_changes.items():
            setattr(record, name, value)
