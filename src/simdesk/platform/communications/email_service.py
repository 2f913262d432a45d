"""
Email service using standard SMTP.

Sends through smtplib on a worker thread so a slow relay never blocks the
event loop, with a bounded socket timeout.
"""

import asyncio
import smtplib
import uuid
from datetime import UTC, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

import structlog
from pydantic import BaseModel, ConfigDict, Field

from simdesk.platform.settings import Settings, settings

logger = structlog.get_logger(__name__)


class EmailMessage(BaseModel):
    """Email message model."""

    model_config = ConfigDict(str_strip_whitespace=True)

    to: list[str] = Field(..., min_length=1, description="Recipient email addresses")
    subject: str = Field(..., min_length=1, description="Email subject")
    text_body: str | None = Field(None, description="Plain text body")
    html_body: str | None = Field(None, description="HTML body")
    from_email: str | None = Field(None, description="Sender email")
    from_name: str | None = Field(None, description="Sender name")
    reply_to: str | None = Field(None, description="Reply-to address")


class EmailResponse(BaseModel):
    """Email sending response."""

    id: str = Field(..., description="Message identifier")
    status: str = Field(..., description="sent or failed")
    message: str = Field(..., description="Status message")
    recipients_count: int = Field(..., description="Number of recipients")
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EmailService:
    """SMTP email sender."""

    def __init__(
        self,
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        use_tls: bool = True,
        default_from: str = "noreply@example.com",
        default_from_name: str | None = None,
        timeout: float = 30.0,
        enabled: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls
        self.default_from = default_from
        self.default_from_name = default_from_name
        self.timeout = timeout
        self.enabled = enabled

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "EmailService":
        email = (config or settings).email
        return cls(
            smtp_host=email.smtp_host,
            smtp_port=email.smtp_port,
            smtp_user=email.smtp_username or None,
            smtp_password=email.smtp_password or None,
            use_tls=email.use_tls,
            default_from=email.from_address,
            default_from_name=email.from_name,
            timeout=email.timeout,
            enabled=email.enabled,
        )

    def _build_mime(self, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = formataddr(
            (message.from_name or self.default_from_name or "", message.from_email or self.default_from)
        )
        mime["To"] = ", ".join(message.to)
        if message.reply_to:
            mime["Reply-To"] = message.reply_to
        if message.text_body:
            mime.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            mime.attach(MIMEText(message.html_body, "html", "utf-8"))
        return mime

    def _deliver(self, mime: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(mime)

    async def send_email(self, message: EmailMessage) -> EmailResponse:
        """Send one message. Failures are reported in the response, not raised."""
        message_id = f"email_{uuid.uuid4().hex[:12]}"
        recipients = len(message.to)

        if not self.enabled:
            logger.info("Email sending disabled, message dropped", message_id=message_id)
            return EmailResponse(
                id=message_id, status="failed", message="Email sending disabled", recipients_count=recipients
            )

        try:
            await asyncio.to_thread(self._deliver, self._build_mime(message))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "Failed to send email",
                message_id=message_id,
                recipients=recipients,
                error=str(e),
            )
            return EmailResponse(
                id=message_id, status="failed", message=str(e), recipients_count=recipients
            )

        logger.info("Email sent", message_id=message_id, recipients=recipients, subject=message.subject)
        return EmailResponse(
            id=message_id, status="sent", message="Email sent successfully", recipients_count=recipients
        )

    async def send_bulk_emails(self, messages: list[EmailMessage]) -> list[EmailResponse]:
        return [await self.send_email(message) for message in messages]


__all__ = ["EmailMessage", "EmailResponse", "EmailService"]
