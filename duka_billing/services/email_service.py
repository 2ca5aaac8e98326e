"""Email service for sending transactional emails via SMTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

from duka_billing.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class TransportResult:
    """Outcome of handing one message to an external transport."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailService:
    """Service for sending transactional emails via SMTP."""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout if timeout is not None else settings.TRANSPORT_TIMEOUT_SECONDS

    async def send_email(self, to: str, subject: str, html_body: str) -> TransportResult:
        """Send an email via SMTP.

        Args:
            to: Recipient email address.
            subject: Email subject line.
            html_body: HTML content of the email.

        Returns:
            A successful result when sent (or a no-op when SMTP is unconfigured);
            a failed result carrying the error when the SMTP exchange fails or
            exceeds the transport timeout.
        """
        if not to:
            return TransportResult(success=False, error="Recipient address is empty")

        if not settings.SMTP_HOST:
            logger.info("SMTP not configured, skipping email to %s: %s", to, subject)
            return TransportResult(success=True)

        import aiosmtplib

        msg = EmailMessage()
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=settings.SMTP_FROM_EMAIL.rpartition("@")[2] or None)
        msg.set_content("Please view this email in an HTML-capable client.")
        msg.add_alternative(html_body, subtype="html")

        try:
            await aiosmtplib.send(
                msg,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USERNAME or None,
                password=settings.SMTP_PASSWORD or None,
                start_tls=settings.SMTP_USE_TLS,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as exc:
            logger.warning("Failed to send email to %s: %s", to, exc)
            return TransportResult(success=False, error=str(exc) or type(exc).__name__)

        logger.info("Email sent to %s: %s", to, subject)
        return TransportResult(success=True, message_id=msg["Message-ID"])
