"""Base model definitions, mixins, and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- The claim mixin shared by every worker-owned queue table
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, Enum, MetaData, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ScopeString = Annotated[str, mapped_column(String(255), nullable=False)]


class Base(DeclarativeBase):
    """Declarative base for all eventsync models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class WorkStatus(enum.Enum):
    """Status of a queued work item.

    Values:
        PENDING: Waiting to be claimed (possibly after a retryable failure)
        CLAIMED: Owned by a worker until its lease expires
        DONE: Processed successfully, never claimed again
        FAILED: Terminal failure, parked until someone edits the record
    """

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


class MeetingProviderKind(enum.Enum):
    """Video-conferencing providers meetings can be hosted on."""

    ZOOM = "zoom"


# =============================================================================
# Mixins
# =============================================================================


class ClaimMixin:
    """Columns that make a table claimable by competing workers.

    A row is eligible when it is PENDING and its not_before hint is null or
    past, or when it is CLAIMED and lease_expires_at has passed. The
    claim_token identifies one specific claim so stale finalizations can be
    rejected.
    """

    scope_id: Mapped[ScopeString]

    status: Mapped[WorkStatus] = mapped_column(
        Enum(
            WorkStatus,
            name="work_status",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=WorkStatus.PENDING,
        server_default=WorkStatus.PENDING.value,
    )

    claim_token: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[OptionalTimestampTZ]
    lease_expires_at: Mapped[OptionalTimestampTZ]

    # Earliest time the row may be claimed again (rate limits, cooldowns)
    not_before: Mapped[OptionalTimestampTZ]

    attempts: Mapped[int] = mapped_column(default=0, server_default="0", nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Bumped on every application-side change; compared at finalize time
    revision: Mapped[int] = mapped_column(default=1, server_default="1", nullable=False)
