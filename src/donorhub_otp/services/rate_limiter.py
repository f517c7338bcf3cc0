"""Per-email admission control for OTP-issuing requests (send / resend)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from donorhub_otp.clock import Clock, system_clock
from donorhub_otp.config import settings
from donorhub_otp.database.repository import RateLimitRepository, normalize_email

logger = logging.getLogger(__name__)

REASON_BLOCKED = "BLOCKED"
REASON_LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    remaining_attempts: int | None = None
    blocked_until: datetime | None = None
    reason: str | None = None
    degraded: bool = False


class RateLimiter:
    """Fixed-window counter: ``max_requests`` issuances per ``window`` per email.

    Exceeding the limit inside a window blocks the email for one further
    window, counted from the rejected request.

    Storage errors fail **open**: the request is admitted and the fault is
    logged. An outage of the limiter table must not lock every user out of
    registration; the cost is that issuance is unthrottled while it lasts.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = system_clock,
        max_requests: int | None = None,
        window: timedelta | None = None,
    ) -> None:
        self._session = session
        self._repo = RateLimitRepository(session)
        self._clock = clock
        if max_requests is None:
            max_requests = settings.rate_limit_max_requests
        if window is None:
            window = timedelta(minutes=settings.rate_limit_window_minutes)
        self.max_requests = max_requests
        self.window = window

    async def check_and_record(self, email: str) -> RateLimitDecision:
        """Decide whether *email* may be issued another code, and count it."""
        email = normalize_email(email)
        try:
            return await self._check_and_record(email)
        except SQLAlchemyError:
            logger.exception("Rate limit check failed for %s, allowing request", email)
            await self._session.rollback()
            return RateLimitDecision(allowed=True, degraded=True)

    async def _check_and_record(self, email: str) -> RateLimitDecision:
        now = self._clock.now()
        record = await self._repo.get(email)

        if record is None:
            await self._repo.create(email, now)
            logger.info("First OTP request for %s", email)
            return RateLimitDecision(allowed=True, remaining_attempts=self.max_requests - 1)

        if record.blocked_until is not None and record.blocked_until > now:
            logger.warning(
                "OTP request blocked for %s until %s", email, record.blocked_until.isoformat()
            )
            return RateLimitDecision(
                allowed=False, blocked_until=record.blocked_until, reason=REASON_BLOCKED
            )

        if now - record.first_request_at < self.window:
            if record.request_count >= self.max_requests:
                record.blocked_until = now + self.window
                await self._repo.save(record)
                logger.warning(
                    "Rate limit exceeded for %s (%d requests), blocked until %s",
                    email,
                    record.request_count,
                    record.blocked_until.isoformat(),
                )
                return RateLimitDecision(
                    allowed=False,
                    blocked_until=record.blocked_until,
                    reason=REASON_LIMIT_EXCEEDED,
                )

            record.request_count += 1
            await self._repo.save(record)
            remaining = self.max_requests - record.request_count
            logger.info("OTP request allowed for %s, %d remaining", email, remaining)
            return RateLimitDecision(allowed=True, remaining_attempts=remaining)

        # Window elapsed: start a new one
        record.request_count = 1
        record.first_request_at = now
        record.blocked_until = None
        await self._repo.save(record)
        logger.info("Rate limit window reset for %s", email)
        return RateLimitDecision(allowed=True, remaining_attempts=self.max_requests - 1)

    async def reset(self, email: str) -> int:
        return await self._repo.delete_for(email)
