"""Shared fixtures: in-memory database, controllable clock, mocked mailer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from donorhub_otp.clock import Clock
from donorhub_otp.config import Settings
from donorhub_otp.database.engine import init_db, make_session_factory
from donorhub_otp.services.email_service import DeliveryOk, EmailService


class FakeClock(Clock):
    """Clock frozen at a fixed instant until explicitly advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_service():
    """Mocked delivery gateway — never actually sends emails."""
    svc = EmailService(
        config=Settings(_env_file=None, smtp_username="u", smtp_password="p")
    )
    svc.send_otp = AsyncMock(return_value=DeliveryOk(message_id="<test@donorhub>"))
    return svc
