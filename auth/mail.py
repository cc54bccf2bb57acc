"""
auth/mail.py -- Outbound mail transport and reset-email templates.

Mailer sends plain-text mail over SMTP (STARTTLS when smtp_use_tls, implicit
TLS otherwise). With no SMTP host configured it runs in dev mode: the message
is logged instead of sent, so the reset flow works on a laptop.

Transport failures raise UpstreamFailure. The reset issuer catches it and
carries on -- the token is already stored and expires on its own.

Templates live in auth/templates/ and are rendered with Jinja2 (autoescape
off: the bodies are text/plain).

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from auth.errors import UpstreamFailure
from core.config import Settings

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("passgate.auth.mail")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)

RESET_SUBJECT = "Resetting the password"


@dataclass
class MailMessage:
    to: str
    from_: str
    subject: str
    body: str


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def forgot_password_email(user: User, base_url: str, token: str, ttl_seconds: int, sender: str) -> MailMessage:
    """Build the password-reset email for user with the deep link to token."""
    body = _templates.get_template("forgot_password_email.txt").render(
        name=user.name or user.email,
        reset_url=f"{base_url.rstrip('/')}/reset/{token}",
        ttl_minutes=ttl_seconds // 60,
    )
    return MailMessage(to=user.email, from_=sender, subject=RESET_SUBJECT, body=body)


class Mailer:
    """SMTP mail transport.

    Usage:
        mailer = Mailer.from_settings(get_settings())
        mailer.send(message)
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def send(self, message: MailMessage) -> None:
        """Deliver message. Raises UpstreamFailure on any transport error."""
        if not self.is_configured:
            logger.info(
                "Mail not configured, logging instead of sending: to=%s subject=%r",
                redact_email(message.to),
                message.subject,
            )
            logger.debug("Mail body:\n%s", message.body)
            return

        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = message.from_
        msg["To"] = message.to
        msg.set_content(message.body)

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                    self._login(server)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            raise UpstreamFailure(f"SMTP delivery to {redact_email(message.to)} failed: {exc}") from exc

        logger.info("Mail sent: to=%s subject=%r", redact_email(message.to), message.subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
