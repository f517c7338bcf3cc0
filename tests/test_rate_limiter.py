"""Tests for the fixed-window issuance rate limiter."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from donorhub_otp.services.rate_limiter import (
    REASON_BLOCKED,
    REASON_LIMIT_EXCEEDED,
    RateLimiter,
)


@pytest.fixture
def limiter(db_session, clock):
    return RateLimiter(db_session, clock=clock, max_requests=5, window=timedelta(hours=1))


@pytest.mark.asyncio
async def test_first_request_allowed(limiter):
    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is True
    assert decision.remaining_attempts == 4


@pytest.mark.asyncio
async def test_five_allowed_then_blocked(limiter, clock):
    remaining = []
    for _ in range(5):
        decision = await limiter.check_and_record("user@example.com")
        assert decision.allowed is True
        remaining.append(decision.remaining_attempts)
    assert remaining == [4, 3, 2, 1, 0]

    denied = await limiter.check_and_record("user@example.com")
    assert denied.allowed is False
    assert denied.reason == REASON_LIMIT_EXCEEDED
    assert denied.blocked_until == clock.now() + timedelta(hours=1)


@pytest.mark.asyncio
async def test_blocked_request_reports_block(limiter, clock):
    for _ in range(6):
        await limiter.check_and_record("user@example.com")
    blocked_until = clock.now() + timedelta(hours=1)

    clock.advance(minutes=30)
    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is False
    assert decision.reason == REASON_BLOCKED
    assert decision.blocked_until == blocked_until


@pytest.mark.asyncio
async def test_block_lifts_after_window(limiter, clock):
    for _ in range(6):
        await limiter.check_and_record("user@example.com")

    clock.advance(hours=1, seconds=1)
    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is True
    assert decision.remaining_attempts == 4


@pytest.mark.asyncio
async def test_window_resets_counter(limiter, clock):
    for _ in range(3):
        await limiter.check_and_record("user@example.com")

    clock.advance(hours=1)
    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is True
    assert decision.remaining_attempts == 4


@pytest.mark.asyncio
async def test_emails_are_independent(limiter):
    for _ in range(6):
        await limiter.check_and_record("a@example.com")

    decision = await limiter.check_and_record("b@example.com")
    assert decision.allowed is True
    assert decision.remaining_attempts == 4


@pytest.mark.asyncio
async def test_email_is_normalized(limiter):
    await limiter.check_and_record("User@Example.com")
    decision = await limiter.check_and_record("  user@example.COM ")
    assert decision.remaining_attempts == 3


@pytest.mark.asyncio
async def test_storage_error_fails_open(clock):
    session = AsyncMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    limiter = RateLimiter(session, clock=clock)

    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is True
    assert decision.degraded is True
    session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_reset_removes_counter(limiter):
    await limiter.check_and_record("user@example.com")
    assert await limiter.reset("user@example.com") == 1
    decision = await limiter.check_and_record("user@example.com")
    assert decision.remaining_attempts == 4


@pytest.mark.asyncio
async def test_zero_limit_is_not_replaced_by_default(db_session, clock):
    limiter = RateLimiter(db_session, clock=clock, max_requests=0)
    assert limiter.max_requests == 0

    await limiter.check_and_record("user@example.com")
    decision = await limiter.check_and_record("user@example.com")
    assert decision.allowed is False
    assert decision.reason == REASON_LIMIT_EXCEEDED
