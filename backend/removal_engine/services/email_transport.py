import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

from removal_engine.config import settings
from removal_engine.exceptions import EmailTransportError

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    def send(self, to: str, subject: str, body: str, reply_to: str | None = None) -> str | None:
        """Hand one message off. Returns a provider message id when there is one."""


class SmtpTransport:
    """Plain SMTP delivery configured from settings."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        sender: str | None = None,
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.sender = sender or settings.email_from

    def send(self, to: str, subject: str, body: str, reply_to: str | None = None) -> str | None:
        if not self.host:
            raise EmailTransportError("SMTP_HOST is not configured")

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP delivery to %s failed: %s", to, exc)
            raise EmailTransportError(str(exc)) from exc

        return msg.get("Message-ID")
