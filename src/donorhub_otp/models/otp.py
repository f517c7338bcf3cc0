"""SQLAlchemy models for issued OTP codes and their issuance rate limit."""

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from donorhub_otp.models.base import Base, UTCDateTime, utcnow


class OTPRecord(Base):
    """One issued verification code for an email address.

    The service keeps at most one live row per email: every send/resend
    deletes the previous rows before inserting the new one.
    """

    __tablename__ = "otp_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(
        String(256), nullable=False, doc="Normalized (trimmed, lower-cased) address"
    )
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, doc="Anchors the hard TTL sweep"
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_otp_codes_email_created_at", "email", "created_at"),
        Index("ix_otp_codes_created_at", "created_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def __repr__(self) -> str:
        return (
            f"<OTPRecord id={self.id} email={self.email!r} "
            f"verified={self.verified} attempts={self.attempts}>"
        )


class RateLimitRecord(Base):
    """Fixed-window counter of OTP issuance requests for one email."""

    __tablename__ = "otp_rate_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_request_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<RateLimitRecord email={self.email!r} count={self.request_count} "
            f"blocked_until={self.blocked_until}>"
        )
