"""Email service — delivers OTP codes via async SMTP.

Delivery never raises: every outcome comes back as a ``DeliveryResult``
so the caller can roll back with one check instead of scattered
``try``/``except`` blocks.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from enum import Enum

import aiosmtplib

from donorhub_otp.config import Settings, settings

logger = logging.getLogger(__name__)


class DeliveryErrorKind(str, Enum):
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_CODE = "INVALID_CODE"
    AUTH_FAILED = "AUTH_FAILED"
    TIMEOUT = "TIMEOUT"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    SEND_FAILED = "SEND_FAILED"


@dataclass(frozen=True)
class DeliveryOk:
    message_id: str


@dataclass(frozen=True)
class DeliveryFailed:
    kind: DeliveryErrorKind
    detail: str = ""


DeliveryResult = DeliveryOk | DeliveryFailed


def classify_smtp_error(exc: BaseException) -> DeliveryErrorKind:
    """Map an exception raised while talking to the SMTP server to a kind."""
    if isinstance(exc, (TimeoutError, aiosmtplib.SMTPTimeoutError)):
        return DeliveryErrorKind.TIMEOUT
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return DeliveryErrorKind.AUTH_FAILED
    # An unresolvable SMTP host is almost always a misconfigured provider
    if isinstance(exc, socket.gaierror) or isinstance(exc.__cause__, socket.gaierror):
        return DeliveryErrorKind.AUTH_FAILED
    if isinstance(
        exc,
        (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected, ConnectionError),
    ):
        return DeliveryErrorKind.CONNECTION_FAILED
    return DeliveryErrorKind.SEND_FAILED


class EmailService:
    """Sends verification-code emails using the configured SMTP server."""

    def __init__(self, config: Settings | None = None, timeout: float | None = None) -> None:
        self._config = config or settings
        self._timeout = (
            timeout if timeout is not None else self._config.email_send_timeout_seconds
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._config.smtp_username and self._config.smtp_password)

    def build_message(self, to_email: str, code: str) -> EmailMessage:
        """Compose the verification email (plain text with an HTML alternative)."""
        app_name = self._config.app_name
        minutes = self._config.otp_validity_minutes

        msg = EmailMessage()
        msg["Subject"] = f"Your {app_name} Verification Code"
        msg["From"] = self._config.resolved_email_from
        msg["To"] = to_email
        msg["Message-ID"] = make_msgid()
        msg.set_content(
            "Hello,\n\n"
            f"Your verification code for {app_name} registration is: {code}\n\n"
            f"This code will expire in {minutes} minutes.\n\n"
            "If you didn't request this code, please ignore this email.\n\n"
            "Best regards,\n"
            f"{app_name} Team\n"
        )
        msg.add_alternative(
            f"""\
<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
    <div style="background-color: #f9f9f9; border-radius: 10px; padding: 30px; text-align: center;">
      <h1 style="color: #e74c3c;">{app_name} Email Verification</h1>
      <p>Your verification code for {app_name} registration is:</p>
      <div style="font-size: 36px; font-weight: bold; color: #e74c3c; letter-spacing: 8px;
                  margin: 30px 0; padding: 20px; background-color: #fff;
                  border: 2px dashed #e74c3c; border-radius: 8px;">{code}</div>
      <p><strong>This code will expire in {minutes} minutes.</strong></p>
      <p>If you didn't request this code, please ignore this email.</p>
      <p style="margin-top: 30px; font-size: 12px; color: #666;">Best regards,<br>{app_name} Team</p>
    </div>
  </body>
</html>
""",
            subtype="html",
        )
        return msg

    async def send_otp(self, to_email: str, code: str) -> DeliveryResult:
        """Deliver *code* to *to_email* within the configured time bound."""
        if not to_email or "@" not in to_email:
            return DeliveryFailed(DeliveryErrorKind.INVALID_EMAIL, "Invalid email address")
        if not code or len(code) != 6:
            return DeliveryFailed(DeliveryErrorKind.INVALID_CODE, "Invalid OTP code")
        if not self.is_configured:
            logger.error(
                "Email service not configured. Set SMTP_USERNAME and SMTP_PASSWORD."
            )
            return DeliveryFailed(
                DeliveryErrorKind.NOT_CONFIGURED, "Email service not configured"
            )

        msg = self.build_message(to_email, code)
        logger.info("Sending OTP email to %s", to_email)
        try:
            await asyncio.wait_for(self._deliver(msg), timeout=self._timeout)
        except Exception as exc:
            kind = classify_smtp_error(exc)
            logger.error(
                "Error sending OTP email to %s: %s (%s)",
                to_email,
                str(exc) or type(exc).__name__,
                kind.value,
            )
            return DeliveryFailed(kind, str(exc) or type(exc).__name__)

        logger.info("OTP email sent to %s: %s", to_email, msg["Message-ID"])
        return DeliveryOk(message_id=msg["Message-ID"])

    async def _deliver(self, msg: EmailMessage) -> None:
        await aiosmtplib.send(
            msg,
            hostname=self._config.resolved_smtp_host,
            port=self._config.smtp_port,
            username=self._config.smtp_username or None,
            password=self._config.smtp_password or None,
            start_tls=True,
            timeout=self._timeout,
        )


def get_email_service() -> EmailService:
    """FastAPI dependency returning the delivery gateway."""
    return EmailService()
