"""Database engine and async session factory."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from donorhub_otp.config import settings
from donorhub_otp.models import otp, user  # noqa: F401  (register tables on Base)
from donorhub_otp.models.base import Base


def make_session_factory(target: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for *target*; objects stay readable after commit."""
    return async_sessionmaker(target, expire_on_commit=False)


engine = create_async_engine(settings.database_url, echo=settings.debug)

async_session_factory = make_session_factory(engine)


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create the OTP, rate-limit and user tables if they don't yet exist."""
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session, rolling back on error.

    Repositories commit per operation; the final commit here only flushes
    anything an endpoint left pending.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
