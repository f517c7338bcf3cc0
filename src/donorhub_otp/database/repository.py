"""Repositories — data access layer for OTP codes, rate limits and users."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from donorhub_otp.models.otp import OTPRecord, RateLimitRecord
from donorhub_otp.models.user import User


def normalize_email(email: str) -> str:
    """Trim and lower-case an address so variants map to one identity."""
    return email.strip().lower()


class OTPRepository:
    """Encapsulates all queries against issued OTP codes.

    Every mutating call commits on its own: each operation is a single-row
    (or single-email) statement and nothing here spans records.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def invalidate_all(self, email: str) -> int:
        """Delete every code stored for *email*; return how many were removed."""
        stmt = delete(OTPRecord).where(OTPRecord.email == normalize_email(email))
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount or 0

    async def create(
        self, email: str, code: str, expires_at: datetime, created_at: datetime
    ) -> OTPRecord:
        record = OTPRecord(
            email=normalize_email(email),
            code=code,
            created_at=created_at,
            expires_at=expires_at,
            verified=False,
            attempts=0,
        )
        self._session.add(record)
        await self._session.commit()
        return record

    async def find_latest(self, email: str) -> OTPRecord | None:
        """Return the most recently created code for *email*.

        More than one row can briefly exist when two sends race, so the
        newest wins.
        """
        stmt = (
            select(OTPRecord)
            .where(OTPRecord.email == normalize_email(email))
            .order_by(OTPRecord.created_at.desc(), OTPRecord.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_verified(self, email: str) -> OTPRecord | None:
        stmt = (
            select(OTPRecord)
            .where(OTPRecord.email == normalize_email(email), OTPRecord.verified.is_(True))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_attempt(self, record: OTPRecord) -> bool:
        """Increment ``attempts`` in the database.

        Returns ``False`` if the row no longer exists (deleted by a resend
        or a consume in the meantime).
        """
        stmt = (
            update(OTPRecord)
            .where(OTPRecord.id == record.id)
            .values(attempts=OTPRecord.attempts + 1)
            .returning(OTPRecord.attempts)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        attempts = result.scalar_one_or_none()
        await self._session.commit()
        if attempts is None:
            return False
        set_committed_value(record, "attempts", attempts)
        return True

    async def mark_verified(self, record: OTPRecord) -> bool:
        """Flag the code as verified; ``False`` if the row has vanished."""
        stmt = (
            update(OTPRecord)
            .where(OTPRecord.id == record.id)
            .values(verified=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        if not result.rowcount:
            return False
        set_committed_value(record, "verified", True)
        return True

    async def delete_one(self, record: OTPRecord) -> None:
        """Remove one specific code (rollback after a failed delivery)."""
        await self._session.execute(delete(OTPRecord).where(OTPRecord.id == record.id))
        await self._session.commit()

    async def purge_stale(self, cutoff: datetime) -> int:
        """Delete codes created before *cutoff* (hard TTL safety net)."""
        result = await self._session.execute(
            delete(OTPRecord).where(OTPRecord.created_at < cutoff)
        )
        await self._session.commit()
        return result.rowcount or 0

    async def list_for(self, email: str | None = None) -> list[OTPRecord]:
        stmt = select(OTPRecord).order_by(OTPRecord.created_at.desc())
        if email:
            stmt = stmt.where(OTPRecord.email == normalize_email(email))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class RateLimitRepository:
    """Queries against the per-email issuance counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, email: str) -> RateLimitRecord | None:
        stmt = select(RateLimitRecord).where(
            RateLimitRecord.email == normalize_email(email)
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, email: str, now: datetime) -> RateLimitRecord:
        record = RateLimitRecord(
            email=normalize_email(email),
            request_count=1,
            first_request_at=now,
            blocked_until=None,
        )
        self._session.add(record)
        await self._session.commit()
        return record

    async def save(self, record: RateLimitRecord) -> None:
        self._session.add(record)
        await self._session.commit()

    async def delete_for(self, email: str | None = None) -> int:
        """Delete the counter for *email*, or every counter when ``None``."""
        stmt = delete(RateLimitRecord)
        if email:
            stmt = stmt.where(RateLimitRecord.email == normalize_email(email))
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount or 0


class UserRepository:
    """Encapsulates all database queries related to users."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == normalize_email(email))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self, name: str, email: str, password_hash: str, user_type: str
    ) -> User:
        """Insert a user; raises ``IntegrityError`` if the email is taken."""
        user = User(
            name=name,
            email=normalize_email(email),
            password_hash=password_hash,
            user_type=user_type,
        )
        self._session.add(user)
        await self._session.commit()
        return user
