"""OTP lifecycle orchestrator — send, resend, verify and consume.

Per email the lifecycle is ``NONE -> SENT -> (SENT | EXPIRED | VERIFIED)``:

* **send / resend** ask the rate limiter for admission, drop any earlier
  code, store a fresh one and hand it to the delivery gateway.  A failed
  delivery, or a gateway that raises, deletes the fresh row again, so no
  code an email was told "sending failed" about can ever verify.
* **verify** checks the latest code for expiry, counts the attempt and
  compares.  A verified code stays verified until it is consumed.
* **consume** tears down every code and counter for the email once
  registration has used the verification.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from donorhub_otp.clock import Clock, system_clock
from donorhub_otp.config import settings
from donorhub_otp.database.repository import OTPRepository, normalize_email
from donorhub_otp.errors import (
    DeliveryError,
    InputError,
    InternalError,
    OTPServiceError,
    RateLimitError,
    VerificationError,
)
from donorhub_otp.services import otp_generator
from donorhub_otp.services.email_service import (
    DeliveryErrorKind,
    DeliveryFailed,
    EmailService,
)
from donorhub_otp.services.rate_limiter import REASON_BLOCKED, RateLimiter

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
OTP_PATTERN = re.compile(r"[0-9]{6}")

# (errorCode, message) shown to the caller for each delivery failure kind
_DELIVERY_ERRORS = {
    DeliveryErrorKind.TIMEOUT: (
        "EMAIL_TIMEOUT",
        "Email service timeout. Please try again.",
    ),
    DeliveryErrorKind.AUTH_FAILED: (
        "EMAIL_AUTH_FAILED",
        "Email service is temporarily unavailable. Please contact support.",
    ),
    DeliveryErrorKind.CONNECTION_FAILED: (
        "EMAIL_CONNECTION_FAILED",
        "Unable to connect to email service. Please try again.",
    ),
    DeliveryErrorKind.NOT_CONFIGURED: (
        "EMAIL_NOT_CONFIGURED",
        "Email service not configured. Please contact support.",
    ),
}


@dataclass
class IssuedOTP:
    """Returned to the caller after a code has been delivered."""

    email: str
    expires_at: datetime
    remaining_attempts: int | None = None


@dataclass
class VerificationResult:
    email: str
    already_verified: bool = False


def validate_email(email: str | None) -> str:
    """Check presence and shape of *email*; return it normalized."""
    if not email or not email.strip():
        raise InputError("EMAIL_REQUIRED", "Email is required")
    if not EMAIL_PATTERN.fullmatch(email.strip()):
        raise InputError("INVALID_EMAIL_FORMAT", "Invalid email format")
    return normalize_email(email)


class OTPService:
    """Composes rate limiter, generator, store and delivery gateway."""

    def __init__(
        self,
        session: AsyncSession,
        email_service: EmailService,
        clock: Clock = system_clock,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._session = session
        self._store = OTPRepository(session)
        self._email = email_service
        self._clock = clock
        self._limiter = rate_limiter or RateLimiter(session, clock=clock)
        self.validity_minutes = settings.otp_validity_minutes
        self.max_verify_attempts = settings.otp_max_verify_attempts

    # ── Issuance ─────────────────────────────────────────

    async def send(self, email: str | None) -> IssuedOTP:
        """Issue a code to *email* and deliver it."""
        return await self._issue(email, action="send")

    async def resend(self, email: str | None) -> IssuedOTP:
        """Issue a replacement code; the previous one stops verifying."""
        return await self._issue(email, action="resend")

    async def _issue(self, email: str | None, action: str) -> IssuedOTP:
        email = validate_email(email)
        started = time.monotonic()
        try:
            decision = await self._limiter.check_and_record(email)
            if not decision.allowed:
                raise self._rate_limit_error(decision.reason, decision.blocked_until)

            removed = await self._store.invalidate_all(email)
            if removed:
                logger.info("Invalidated %d existing OTP(s) for %s", removed, email)

            now = self._clock.now()
            code = otp_generator.generate_code()
            expires_at = otp_generator.expiry(self.validity_minutes, now)
            record = await self._store.create(email, code, expires_at, created_at=now)
            logger.info("OTP record created for %s, expires %s", email, expires_at.isoformat())

            try:
                result = await self._email.send_otp(email, code)
            except BaseException:
                # Also covers cancellation; the code was never confirmed sent
                await self._store.delete_one(record)
                logger.warning("OTP %s aborted for %s, record rolled back", action, email)
                raise
            if isinstance(result, DeliveryFailed):
                await self._store.delete_one(record)
                logger.error(
                    "OTP %s failed for %s, record rolled back: %s (%s)",
                    action,
                    email,
                    result.detail,
                    result.kind.value,
                )
                raise self._delivery_error(result, action)
        except OTPServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error during OTP %s for %s after %.0fms",
                action,
                email,
                (time.monotonic() - started) * 1000,
            )
            raise InternalError(
                f"An unexpected error occurred while {action}ing OTP. Please try again."
            ) from exc

        logger.info(
            "OTP %s completed for %s in %.0fms",
            action,
            email,
            (time.monotonic() - started) * 1000,
        )
        return IssuedOTP(
            email=email,
            expires_at=expires_at,
            remaining_attempts=decision.remaining_attempts,
        )

    def _rate_limit_error(
        self, reason: str | None, blocked_until: datetime | None
    ) -> RateLimitError:
        extra = {"blockedUntil": blocked_until.isoformat() if blocked_until else None}
        if reason == REASON_BLOCKED and blocked_until is not None:
            seconds = (blocked_until - self._clock.now()).total_seconds()
            minutes = max(1, math.ceil(seconds / 60))
            return RateLimitError(
                "RATE_LIMIT_BLOCKED",
                f"Too many attempts. Please try again in {minutes} minute(s).",
                extra=extra,
            )
        return RateLimitError(
            "RATE_LIMIT_EXCEEDED",
            "Too many attempts. Please try again in 1 hour.",
            extra=extra,
        )

    @staticmethod
    def _delivery_error(result: DeliveryFailed, action: str) -> DeliveryError:
        code, message = _DELIVERY_ERRORS.get(
            result.kind,
            ("EMAIL_SEND_FAILED", f"Failed to {action} OTP email. Please try again."),
        )
        return DeliveryError(code, message, kind=result.kind.value)

    # ── Verification ─────────────────────────────────────

    async def verify(self, email: str | None, otp: str | None) -> VerificationResult:
        """Check *otp* against the latest code issued to *email*."""
        if not email or not otp:
            raise InputError("MISSING_FIELDS", "Email and OTP are required")
        email = validate_email(email)
        if not OTP_PATTERN.fullmatch(otp):
            raise InputError("INVALID_OTP_FORMAT", "OTP must be a 6-digit number")

        started = time.monotonic()
        try:
            record = await self._store.find_latest(email)
            if record is None:
                raise self._not_found()

            now = self._clock.now()
            if record.is_expired(now):
                logger.warning(
                    "OTP expired for %s (expired %s)", email, record.expires_at.isoformat()
                )
                raise VerificationError(
                    "OTP_EXPIRED",
                    "OTP has expired. Please request a new code.",
                    extra={"expired": True},
                )

            if record.verified:
                logger.info("Email already verified: %s", email)
                return VerificationResult(email=email, already_verified=True)

            if not await self._store.mark_attempt(record):
                raise self._not_found()
            logger.info("Verification attempt %d for %s", record.attempts, email)

            if record.code != otp:
                logger.warning("Invalid OTP for %s (attempt %d)", email, record.attempts)
                raise VerificationError(
                    "INVALID_OTP",
                    "Invalid OTP code. Please try again.",
                    extra={
                        "verified": False,
                        "attemptsRemaining": max(
                            0, self.max_verify_attempts - record.attempts
                        ),
                    },
                )

            if not await self._store.mark_verified(record):
                raise self._not_found()
        except OTPServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error verifying OTP for %s after %.0fms",
                email,
                (time.monotonic() - started) * 1000,
            )
            raise InternalError(
                "An unexpected error occurred while verifying OTP. Please try again."
            ) from exc

        logger.info(
            "Verification successful for %s in %.0fms",
            email,
            (time.monotonic() - started) * 1000,
        )
        return VerificationResult(email=email)

    @staticmethod
    def _not_found() -> VerificationError:
        return VerificationError(
            "OTP_NOT_FOUND",
            "No OTP found for this email. Please request a new one.",
            status_code=404,
        )

    # ── Consumption ──────────────────────────────────────

    async def has_verified(self, email: str) -> bool:
        return await self._store.find_verified(email) is not None

    async def consume(self, email: str) -> None:
        """Delete all codes and the rate-limit counter for *email*."""
        email = normalize_email(email)
        codes = await self._store.invalidate_all(email)
        counters = await self._limiter.reset(email)
        logger.info(
            "Consumed OTP state for %s (%d code(s), %d counter(s))", email, codes, counters
        )
