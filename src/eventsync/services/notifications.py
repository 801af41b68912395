"""Notification queue: enqueue side and stores.

Request handlers call ``NotificationsManager.enqueue`` with an already
rendered notification. The notification dispatch worker claims queued
notifications from a ``NotificationStore`` (PostgreSQL) or
``MemoryNotificationStore`` (in-process) and sends them.

Attachment content is stored once per SHA-256 digest and loaded only
when the notification is sent.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - used in hook signatures at runtime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from eventsync.db.models.base import WorkStatus
from eventsync.db.models.notifications import (
    Attachment,
    Notification,
    notification_attachments,
)
from eventsync.services.claim_store import (
    ClaimStoreError,
    MemoryClaimStore,
    MemoryRecord,
    Outcome,
    OutcomeKind,
    PgClaimStore,
    WorkClaimStore,
)
from eventsync.services.email import DEFAULT_BODY_CONTENT_TYPE, EmailAttachment
from eventsync.services.retry import PermanentFailure

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.orm import InstrumentedAttribute

logger = logging.getLogger(__name__)


class MissingAttachmentError(PermanentFailure):
    """Attachment content referenced by a notification is gone."""

    def __init__(self, attachment_ids: Sequence[uuid.UUID]) -> None:
        self.attachment_ids = list(attachment_ids)
        ids = ", ".join(str(a) for a in self.attachment_ids)
        super().__init__(f"attachment content missing: {ids}")


@dataclass(frozen=True)
class NewAttachment:
    """Attachment supplied at enqueue time."""

    file_name: str
    content_type: str
    data: bytes

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass(frozen=True)
class NewNotification:
    """A rendered notification to queue."""

    kind: str
    recipients: list[str]
    subject: str
    body: bytes
    body_content_type: str = DEFAULT_BODY_CONTENT_TYPE
    attachments: list[NewAttachment] = field(default_factory=list)


@dataclass(frozen=True)
class NotificationJob:
    """Queued notification as handed to the dispatch worker."""

    notification_id: uuid.UUID
    scope_id: str
    kind: str
    recipients: list[str]
    subject: str
    body: bytes
    body_content_type: str = DEFAULT_BODY_CONTENT_TYPE
    attachment_ids: list[uuid.UUID] = field(default_factory=list)
    last_error: str | None = None


class NotificationQueue(WorkClaimStore[NotificationJob]):
    """A claim store that can also queue notifications and load attachments."""

    @abstractmethod
    async def enqueue(self, scope: str, notification: NewNotification) -> uuid.UUID:
        """Insert a pending notification and return its id."""

    @abstractmethod
    async def load_attachments(self, attachment_ids: Sequence[uuid.UUID]) -> list[EmailAttachment]:
        """Load attachments in order.

        Raises:
            MissingAttachmentError: If any id is unknown.
        """


def _dedupe_attachments(attachments: Sequence[NewAttachment]) -> list[NewAttachment]:
    """Drop attachments whose content already appears earlier in the list."""
    seen: set[str] = set()
    unique = []
    for attachment in attachments:
        digest = attachment.sha256
        if digest not in seen:
            seen.add(digest)
            unique.append(attachment)
    return unique


# =============================================================================
# PostgreSQL
# =============================================================================


class NotificationStore(PgClaimStore[NotificationJob], NotificationQueue):
    """PostgreSQL store for queued notifications."""

    model = Notification

    @property
    def _id_column(self) -> InstrumentedAttribute[uuid.UUID]:
        return Notification.notification_id

    def _claim_options(self) -> Sequence[Any]:
        # Only ids; content is loaded when the email is built
        return (selectinload(Notification.attachments).load_only(Attachment.attachment_id),)

    def _to_payload(self, row: Notification) -> NotificationJob:
        return NotificationJob(
            notification_id=row.notification_id,
            scope_id=row.scope_id,
            kind=row.kind,
            recipients=list(row.recipients),
            subject=row.subject,
            body=row.body,
            body_content_type=row.body_content_type,
            attachment_ids=row.attachment_ids(),
            last_error=row.last_error,
        )

    def _on_finalized(self, row: Notification, outcome: Outcome, now: datetime) -> None:
        if row.status in (WorkStatus.DONE, WorkStatus.FAILED):
            row.processed_at = now

    async def enqueue(self, scope: str, notification: NewNotification) -> uuid.UUID:
        """Write a notification and its attachments in one transaction.

        Raises:
            ClaimStoreError: If the rows cannot be written.
        """
        try:
            async with self.session_factory() as session:
                attachment_ids = []
                for attachment in _dedupe_attachments(notification.attachments):
                    digest = attachment.sha256
                    await session.execute(
                        pg_insert(Attachment)
                        .values(
                            sha256=digest,
                            file_name=attachment.file_name,
                            content_type=attachment.content_type,
                            data=attachment.data,
                        )
                        .on_conflict_do_nothing(index_elements=["sha256"])
                    )
                    attachment_id = await session.scalar(
                        select(Attachment.attachment_id).where(Attachment.sha256 == digest)
                    )
                    attachment_ids.append(attachment_id)

                row = Notification(
                    notification_id=uuid.uuid4(),
                    scope_id=scope,
                    kind=notification.kind,
                    recipients=list(notification.recipients),
                    subject=notification.subject,
                    body=notification.body,
                    body_content_type=notification.body_content_type,
                )
                session.add(row)
                await session.flush()

                if attachment_ids:
                    await session.execute(
                        notification_attachments.insert(),
                        [
                            {
                                "notification_id": row.notification_id,
                                "attachment_id": attachment_id,
                                "position": position,
                            }
                            for position, attachment_id in enumerate(attachment_ids)
                        ],
                    )
                await session.commit()
                return row.notification_id

        except SQLAlchemyError as e:
            logger.error("Failed to enqueue notification: scope=%s, error=%s", scope, e)
            raise ClaimStoreError(f"Failed to enqueue notification: {e}") from e

    async def load_attachments(self, attachment_ids: Sequence[uuid.UUID]) -> list[EmailAttachment]:
        """Load attachment content in the given order.

        Raises:
            MissingAttachmentError: If any attachment or its content is gone.
        """
        if not attachment_ids:
            return []
        try:
            async with self.session_factory() as session:
                result = await session.scalars(
                    select(Attachment).where(Attachment.attachment_id.in_(attachment_ids))
                )
                found = {a.attachment_id: a for a in result.all()}
        except SQLAlchemyError as e:
            raise ClaimStoreError(f"Failed to load attachments: {e}") from e

        missing = [a for a in attachment_ids if a not in found or found[a].data is None]
        if missing:
            raise MissingAttachmentError(missing)

        return [
            EmailAttachment(
                file_name=found[a].file_name,
                content_type=found[a].content_type,
                data=found[a].data,  # type: ignore[arg-type]
            )
            for a in attachment_ids
        ]


# =============================================================================
# In-memory
# =============================================================================


def _memory_job(record: MemoryRecord) -> NotificationJob:
    return NotificationJob(
        notification_id=record.item_id,
        scope_id=record.scope_id,
        kind=record.kind,
        recipients=list(record.recipients),
        subject=record.subject,
        body=record.body,
        body_content_type=record.body_content_type,
        attachment_ids=list(record.attachment_ids),
        last_error=record.last_error,
    )


class MemoryNotificationStore(MemoryClaimStore[NotificationJob], NotificationQueue):
    """In-process notification store."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(_memory_job, id_field="notification_id", **kwargs)
        self.attachments: dict[uuid.UUID, EmailAttachment | None] = {}
        self._attachments_by_digest: dict[str, uuid.UUID] = {}

    async def enqueue(self, scope: str, notification: NewNotification) -> uuid.UUID:
        attachment_ids = []
        for attachment in _dedupe_attachments(notification.attachments):
            digest = attachment.sha256
            attachment_id = self._attachments_by_digest.get(digest)
            if attachment_id is None:
                attachment_id = uuid.uuid4()
                self._attachments_by_digest[digest] = attachment_id
                self.attachments[attachment_id] = EmailAttachment(
                    file_name=attachment.file_name,
                    content_type=attachment.content_type,
                    data=attachment.data,
                )
            attachment_ids.append(attachment_id)

        return await self.add(
            scope,
            kind=notification.kind,
            recipients=list(notification.recipients),
            subject=notification.subject,
            body=notification.body,
            body_content_type=notification.body_content_type,
            attachment_ids=attachment_ids,
            processed_at=None,
        )

    async def load_attachments(self, attachment_ids: Sequence[uuid.UUID]) -> list[EmailAttachment]:
        missing = [a for a in attachment_ids if self.attachments.get(a) is None]
        if missing:
            raise MissingAttachmentError(missing)
        return [self.attachments[a] for a in attachment_ids]  # type: ignore[misc]

    async def finalize(self, item: Any, outcome: Outcome) -> bool:
        applied = await super().finalize(item, outcome)
        if applied and outcome.kind is not OutcomeKind.RETRY:
            record = self.get(item.item_id)
            if record is not None and record.status in (WorkStatus.DONE, WorkStatus.FAILED):
                record.processed_at = self._clock()
        return applied


# =============================================================================
# Enqueue side
# =============================================================================


class NotificationsManager:
    """Entry point used by request handlers to queue notifications.

    Example:
        manager = NotificationsManager(NotificationStore())
        await manager.enqueue("group-42", NewNotification(
            kind="event-published",
            recipients=["member@example.org"],
            subject="New event",
            body=b"<p>...</p>",
        ))
    """

    def __init__(self, store: NotificationQueue) -> None:
        self.store = store

    async def enqueue(self, scope: str, notification: NewNotification) -> uuid.UUID | None:
        """Queue a notification for delivery.

        Duplicate recipients are collapsed. A notification without
        recipients is dropped without writing anything.

        Returns:
            The notification id, or None if nothing was queued.
        """
        recipients = list(dict.fromkeys(r.strip() for r in notification.recipients if r.strip()))
        if not recipients:
            logger.info(
                "Notification skipped, no recipients: scope=%s, kind=%s",
                scope,
                notification.kind,
            )
            return None

        if recipients != notification.recipients:
            notification = NewNotification(
                kind=notification.kind,
                recipients=recipients,
                subject=notification.subject,
                body=notification.body,
                body_content_type=notification.body_content_type,
                attachments=notification.attachments,
            )

        notification_id = await self.store.enqueue(scope, notification)
        logger.info(
            "Notification enqueued: notification_id=%s, scope=%s, kind=%s, "
            "recipients=%d, attachments=%d",
            notification_id,
            scope,
            notification.kind,
            len(recipients),
            len(notification.attachments),
        )
        return notification_id
