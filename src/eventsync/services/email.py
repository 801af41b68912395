"""Email transport for queued notifications.

Messages are sent via SMTP (plain, STARTTLS or implicit TLS). Rendering is
done upstream: the transport receives an already rendered subject and body
plus optional attachments and only assembles the MIME message.

Failures are split in two:
- EmailPermanentError: retrying cannot help (malformed address, every
  recipient refused with a 5xx reply)
- EmailTransientError: anything else (connection problems, temporary SMTP
  errors); the notification is retried later
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import smtplib
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import TYPE_CHECKING

from email_validator import EmailNotValidError, validate_email

if TYPE_CHECKING:
    from eventsync.core.config import SMTPSettings

logger = logging.getLogger(__name__)

DEFAULT_BODY_CONTENT_TYPE = "text/html; charset=utf-8"


@dataclass(frozen=True)
class EmailAttachment:
    """One file attached to an email."""

    file_name: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class EmailMessage:
    """A fully rendered email ready to be sent."""

    recipients: list[str]
    subject: str
    body: bytes
    body_content_type: str = DEFAULT_BODY_CONTENT_TYPE
    attachments: list[EmailAttachment] = field(default_factory=list)


class EmailError(Exception):
    """Base exception for email operations."""

    pass


class EmailPermanentError(EmailError):
    """Delivery failed and will fail again if retried."""

    pass


class EmailTransientError(EmailError):
    """Delivery failed for a reason that may go away."""

    pass


class EmailTransport(ABC):
    """Sends rendered emails."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> str:
        """Send a message and return its Message-ID.

        Raises:
            EmailPermanentError: Retrying will not help.
            EmailTransientError: The send may succeed later.
        """


def check_addresses(recipients: list[str]) -> None:
    """Reject syntactically invalid recipient addresses.

    Raises:
        EmailPermanentError: If any address is malformed.
    """
    for address in recipients:
        try:
            validate_email(address, check_deliverability=False)
        except EmailNotValidError as e:
            msg = f"Invalid recipient address {address!r}: {e}"
            raise EmailPermanentError(msg) from e


def _split_content_type(content_type: str) -> tuple[str, str, str]:
    """Split 'text/html; charset=utf-8' into ('text', 'html', 'utf-8')."""
    mime, _, params = content_type.partition(";")
    maintype, _, subtype = mime.strip().partition("/")
    charset = "utf-8"
    for param in params.split(";"):
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            charset = value.strip('"')
    return maintype or "application", subtype or "octet-stream", charset


def build_mime_message(
    message: EmailMessage,
    *,
    from_header: str,
    message_id: str,
) -> MIMEMultipart:
    """Assemble a multipart/mixed message with the body and attachments."""
    mime = MIMEMultipart("mixed")
    mime["Subject"] = message.subject
    mime["From"] = from_header
    # One envelope for everybody; don't expose the list when there are several
    if len(message.recipients) == 1:
        mime["To"] = message.recipients[0]
    else:
        mime["To"] = "undisclosed-recipients:;"
    mime["Date"] = formatdate(localtime=False)
    mime["Message-ID"] = message_id

    maintype, subtype, charset = _split_content_type(message.body_content_type)
    if maintype == "text":
        mime.attach(MIMEText(message.body.decode(charset, errors="replace"), subtype, charset))
    else:
        body_part = MIMEBase(maintype, subtype)
        body_part.set_payload(message.body)
        encoders.encode_base64(body_part)
        mime.attach(body_part)

    for attachment in message.attachments:
        a_main, a_sub, _ = _split_content_type(attachment.content_type)
        part = MIMEBase(a_main, a_sub)
        part.set_payload(attachment.data)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=attachment.file_name)
        mime.attach(part)

    return mime


class SMTPEmailTransport(EmailTransport):
    """SMTP implementation of EmailTransport.

    smtplib is blocking, so each send runs in a worker thread.

    Attributes:
        smtp_settings: SMTP configuration for email delivery.
    """

    def __init__(self, smtp_settings: SMTPSettings) -> None:
        self.smtp_settings = smtp_settings

    async def send(self, message: EmailMessage) -> str:
        """Send a message through the configured SMTP server."""
        if not message.recipients:
            msg = "Email has no recipients"
            raise EmailPermanentError(msg)
        check_addresses(message.recipients)
        return await asyncio.to_thread(self._send_email, message)

    def _get_domain(self) -> str:
        _, _, domain = self.smtp_settings.from_address.partition("@")
        return domain or "localhost"

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated SMTP connection."""
        settings = self.smtp_settings
        if settings.use_ssl:
            # Implicit TLS (port 465)
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                settings.host,
                settings.port,
                timeout=settings.timeout,
                context=ssl.create_default_context(),
            )
        else:
            server = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
            if settings.use_tls:
                server.starttls(context=ssl.create_default_context())

        if settings.username and settings.password:
            server.login(settings.username, settings.password.get_secret_value())
        return server

    def _send_email(self, message: EmailMessage) -> str:
        """Send an email via SMTP (blocking).

        Returns:
            The Message-ID header of the sent email.

        Raises:
            EmailPermanentError: Every recipient was refused with a 5xx reply.
            EmailTransientError: Any other SMTP or connection failure.
        """
        settings = self.smtp_settings
        message_id = f"<{secrets.token_hex(16)}@{self._get_domain()}>"
        mime = build_mime_message(
            message,
            from_header=f"{settings.from_name} <{settings.from_address}>",
            message_id=message_id,
        )

        try:
            server = self._connect()
            try:
                refused = server.sendmail(
                    settings.from_address,
                    message.recipients,
                    mime.as_string(),
                )
            finally:
                with contextlib.suppress(smtplib.SMTPException, OSError):
                    server.quit()
        except smtplib.SMTPRecipientsRefused as e:
            msg = f"All recipients refused: {e.recipients}"
            # 4xx replies (greylisting, full mailbox) may succeed later
            if all(code >= 500 for code, _ in e.recipients.values()):
                raise EmailPermanentError(msg) from e
            raise EmailTransientError(msg) from e
        except smtplib.SMTPException as e:
            msg = f"SMTP error: {e}"
            raise EmailTransientError(msg) from e
        except OSError as e:
            msg = f"Connection error: {e}"
            raise EmailTransientError(msg) from e

        if refused:
            logger.warning(
                "Some recipients were refused: message_id=%s, refused=%s",
                message_id,
                sorted(refused),
            )

        logger.info(
            "Email sent: message_id=%s, recipients=%d, attachments=%d",
            message_id,
            len(message.recipients),
            len(message.attachments),
        )
        return message_id
