from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional
from urllib.parse import quote

from flamingo.config import Settings
from flamingo.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_VERIFY_TEXT = """\
Confirm your email address

Open this link to activate your {product} account:
{url}

The link expires in {hours} hours. If you did not sign up, you can ignore this message.
"""

_VERIFY_HTML = """\
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6;">
  <h2>Confirm your email address</h2>
  <p>Click the button below to activate your {product} account.</p>
  <p><a href="{url}" style="display: inline-block; padding: 10px 20px; background: #e8467c; color: #fff; text-decoration: none; border-radius: 4px;">Verify email</a></p>
  <p>The link expires in {hours} hours. If you did not sign up, you can ignore this message.</p>
</body>
</html>
"""


class EmailDeliveryError(Exception):
    """SMTP delivery failed; raised so the background runner records it."""


class EmailService:
    """Sends verification mail over SMTP.

    Without an SMTP host the message is logged instead of sent, which keeps
    development and test runs self-contained. All methods block; callers on
    the event loop go through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Flamingo",
        client_url: str = "http://localhost:3000",
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.client_url = client_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            client_url=settings.client_url,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.client_url}/auth/verify?token={quote(token)}"

    def build_verification_message(self, to_email: str, token: str) -> EmailMessage:
        fields = {
            "product": self.from_name,
            "url": self.verification_url(token),
            "hours": self.verification_ttl_hours,
        }
        msg = EmailMessage()
        msg["Subject"] = f"Verify your {self.from_name} account"
        msg["From"] = formataddr((self.from_name, self.from_email or ""))
        msg["To"] = to_email
        msg.set_content(_VERIFY_TEXT.format(**fields))
        msg.add_alternative(_VERIFY_HTML.format(**fields), subtype="html")
        return msg

    def _open(self) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        return smtplib.SMTP_SSL(
            self.smtp_host,
            self.smtp_port,
            context=ssl.create_default_context(),
            timeout=SMTP_TIMEOUT_SECONDS,
        )

    def deliver(self, msg: EmailMessage) -> None:
        """Send ``msg``, or log it when SMTP is not configured."""
        if not self.is_configured:
            logger.info(
                "email_not_sent_dev_mode",
                to_email=msg["To"],
                subject=msg["Subject"],
            )
            return
        try:
            # the connection closes on every exit, including TLS and auth failures
            with self._open() as server:
                if self.smtp_use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            raise EmailDeliveryError(f"{type(exc).__name__}: {exc}") from exc
        logger.info("email_sent", to_email=msg["To"], subject=msg["Subject"])

    def send_verification_email(self, to_email: str, token: str) -> None:
        self.deliver(self.build_verification_message(to_email, token))
