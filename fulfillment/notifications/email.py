"""Email delivery — SMTP sender for user-facing order emails.

Uses standard SMTP with TLS. The sender never raises on delivery
problems; it reports them in ``SendResult`` so callers decide what a
failure means.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    recipient: str
    template_id: str
    subject: str
    text_body: str
    html_body: str = ""


@dataclass
class SendResult:
    """Result of sending an email."""

    success: bool
    error: str = ""
    message_id: str = ""


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> SendResult: ...


class SmtpEmailSender:
    """Email sender via SMTP."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 15.0,
    ):
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._from = sender or user
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._from)

    def format_message(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self._from
        msg["To"] = message.recipient
        msg["X-Template-Id"] = message.template_id
        msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg

    def send(self, message: EmailMessage) -> SendResult:
        if not self.is_configured:
            logger.warning(
                "SMTP not configured. Skipping email %s to %s",
                message.template_id, message.recipient,
            )
            return SendResult(success=False, error="Email not configured (missing SMTP host/from)")

        formatted = self.format_message(message)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                if self._user and self._password:
                    server.login(self._user, self._password)
                server.send_message(formatted)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Email send failed for %s: %s", message.template_id, type(e).__name__)
            return SendResult(success=False, error=type(e).__name__)

        logger.info("Email %s sent to %s", message.template_id, message.recipient)
        return SendResult(success=True, message_id=formatted.get("Message-ID", "") or "")
