"""
Email transport

The engine only depends on the `EmailSender` contract; concrete vendors
plug in behind it. `SMTPEmailSender` covers plain SMTP relays and
`DryRunEmailSender` is used when no transport is configured.
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from ..models.execution import utcnow


logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Result of one send attempt"""
    success: bool
    recipient: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


@dataclass
class OutgoingEmail:
    """Message captured by DryRunEmailSender"""
    from_address: str
    to: str
    subject: str
    html: str
    sent_at: datetime = field(default_factory=utcnow)


class EmailSender(ABC):
    """Email transport contract"""

    @abstractmethod
    async def send(self, from_address: str, to: str, subject: str, html: str) -> SendResult:
        """Send one HTML message; failures are reported, not raised"""
        ...


class SMTPEmailSender(EmailSender):
    """Send through an SMTP relay.

    smtplib is blocking, so delivery runs in the default executor.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 30.0
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    async def send(self, from_address: str, to: str, subject: str, html: str) -> SendResult:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = from_address
            msg["To"] = to
            msg.attach(MIMEText(html, "html"))

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self._send_smtp(from_address, to, msg),
            )

            return SendResult(success=True, recipient=to, sent_at=utcnow())

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email send to {to} failed: {e}")
            return SendResult(success=False, recipient=to, error=str(e))

    def _send_smtp(self, from_address, to, msg):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(from_address, [to], msg.as_string())


class DryRunEmailSender(EmailSender):
    """Log instead of sending; keeps every message for inspection"""

    def __init__(self):
        self.sent: List[OutgoingEmail] = []

    async def send(self, from_address: str, to: str, subject: str, html: str) -> SendResult:
        self.sent.append(OutgoingEmail(from_address, to, subject, html))
        logger.info(f"Would send email to {to}: {subject}")
        return SendResult(success=True, recipient=to, sent_at=utcnow())
