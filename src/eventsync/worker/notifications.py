"""Notification dispatch worker.

Sends queued notifications through the email transport. Each notification
is sent once, as one message to all of its recipients.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from eventsync.services.claim_store import Outcome
from eventsync.services.email import EmailMessage
from eventsync.services.notifications import NotificationJob
from eventsync.worker.base import ClaimWorker

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from eventsync.services.claim_store import ClaimedItem
    from eventsync.services.email import EmailTransport
    from eventsync.services.notifications import NotificationQueue
    from eventsync.worker.base import WorkerConfig

logger = logging.getLogger(__name__)


class NotificationDispatchWorker(ClaimWorker[NotificationJob]):
    """Claims queued notifications and sends them.

    Attributes:
        queue: Notification store, also used to load attachments.
        transport: Email transport used for delivery.
        rcpts_whitelist: When not None, only these addresses receive email.
            An empty whitelist blocks everybody.
    """

    kind = "notification"

    def __init__(
        self,
        store: NotificationQueue,
        transport: EmailTransport,
        config: WorkerConfig | None = None,
        *,
        rcpts_whitelist: Iterable[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(store, config, clock=clock)
        self.queue = store
        self.transport = transport
        self.rcpts_whitelist = (
            None if rcpts_whitelist is None else {r.strip().lower() for r in rcpts_whitelist}
        )

    def _allowed_recipients(self, recipients: list[str]) -> list[str]:
        if self.rcpts_whitelist is None:
            return list(recipients)
        return [r for r in recipients if r.strip().lower() in self.rcpts_whitelist]

    async def process(self, item: ClaimedItem[NotificationJob]) -> Outcome:
        job = item.payload
        recipients = self._allowed_recipients(job.recipients)
        if len(recipients) < len(job.recipients):
            logger.warning(
                "Recipients not in whitelist dropped: notification_id=%s, dropped=%d",
                job.notification_id,
                len(job.recipients) - len(recipients),
            )
        if not recipients:
            logger.warning(
                "Notification not sent, no allowed recipients: notification_id=%s, kind=%s",
                job.notification_id,
                job.kind,
            )
            return Outcome.succeeded()

        attachments = await self.queue.load_attachments(job.attachment_ids)
        message_id = await self.transport.send(
            EmailMessage(
                recipients=recipients,
                subject=job.subject,
                body=job.body,
                body_content_type=job.body_content_type,
                attachments=attachments,
            )
        )

        logger.info(
            "Notification sent: notification_id=%s, kind=%s, scope=%s, message_id=%s",
            job.notification_id,
            job.kind,
            item.scope,
            message_id,
        )
        return Outcome.succeeded()
