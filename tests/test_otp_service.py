"""Tests for the OTP lifecycle: send, resend, verify and consume."""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from donorhub_otp.database.repository import OTPRepository, RateLimitRepository
from donorhub_otp.errors import (
    DeliveryError,
    InputError,
    InternalError,
    RateLimitError,
    VerificationError,
)
from donorhub_otp.services.email_service import DeliveryErrorKind, DeliveryFailed
from donorhub_otp.services.otp_service import OTPService

EMAIL = "user@example.com"


def sent_code(email_service) -> str:
    """The code handed to the mocked gateway by the latest send."""
    return email_service.send_otp.call_args.args[1]


@pytest.fixture
def service(db_session, email_service, clock):
    return OTPService(session=db_session, email_service=email_service, clock=clock)


def _other_code(code: str) -> str:
    return "111111" if code != "111111" else "222222"


# ──────────────────────────────────────────────────────────
# Send / resend
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_send_stores_and_delivers(service, email_service, db_session, clock):
    issued = await service.send(EMAIL)

    assert issued.email == EMAIL
    assert issued.expires_at == clock.now() + timedelta(minutes=10)
    assert issued.remaining_attempts == 4

    code = sent_code(email_service)
    assert re.fullmatch(r"\d{6}", code)
    record = await OTPRepository(db_session).find_latest(EMAIL)
    assert record.code == code
    assert record.verified is False
    assert record.attempts == 0


@pytest.mark.asyncio
async def test_send_normalizes_email(service, email_service, db_session):
    issued = await service.send("user@EXAMPLE.com ")

    assert issued.email == EMAIL
    email_service.send_otp.assert_awaited_once()
    assert email_service.send_otp.call_args.args[0] == EMAIL
    assert await OTPRepository(db_session).find_latest(EMAIL) is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("email", "code"),
    [(None, "EMAIL_REQUIRED"), ("   ", "EMAIL_REQUIRED"), ("user@example", "INVALID_EMAIL_FORMAT")],
)
async def test_send_rejects_bad_email_before_rate_limit(
    service, email_service, db_session, email, code
):
    with pytest.raises(InputError) as exc_info:
        await service.send(email)

    assert exc_info.value.code == code
    email_service.send_otp.assert_not_called()
    assert await RateLimitRepository(db_session).get("user@example") is None


@pytest.mark.asyncio
async def test_only_one_record_after_send(service, db_session):
    await service.send(EMAIL)
    await service.send(EMAIL)

    records = await OTPRepository(db_session).list_for(EMAIL)
    assert len(records) == 1


@pytest.mark.asyncio
async def test_resend_invalidates_previous_code(service, email_service):
    await service.send(EMAIL)
    old_code = sent_code(email_service)
    await service.resend(EMAIL)
    new_code = sent_code(email_service)

    if old_code != new_code:
        with pytest.raises(VerificationError) as exc_info:
            await service.verify(EMAIL, old_code)
        assert exc_info.value.code == "INVALID_OTP"

    result = await service.verify(EMAIL, new_code)
    assert result.already_verified is False


# ──────────────────────────────────────────────────────────
# Delivery failure rollback
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kind", "error_code"),
    [
        (DeliveryErrorKind.TIMEOUT, "EMAIL_TIMEOUT"),
        (DeliveryErrorKind.AUTH_FAILED, "EMAIL_AUTH_FAILED"),
        (DeliveryErrorKind.CONNECTION_FAILED, "EMAIL_CONNECTION_FAILED"),
        (DeliveryErrorKind.NOT_CONFIGURED, "EMAIL_NOT_CONFIGURED"),
        (DeliveryErrorKind.SEND_FAILED, "EMAIL_SEND_FAILED"),
        (DeliveryErrorKind.INVALID_EMAIL, "EMAIL_SEND_FAILED"),
    ],
)
async def test_delivery_failure_rolls_back_record(
    service, email_service, db_session, kind, error_code
):
    email_service.send_otp.return_value = DeliveryFailed(kind, "nope")

    with pytest.raises(DeliveryError) as exc_info:
        await service.send(EMAIL)

    assert exc_info.value.code == error_code
    assert exc_info.value.kind == kind.value
    assert exc_info.value.status_code == 500
    assert await OTPRepository(db_session).find_latest(EMAIL) is None


@pytest.mark.asyncio
async def test_failed_resend_leaves_no_verifiable_code(service, email_service, db_session):
    await service.send(EMAIL)
    old_code = sent_code(email_service)
    email_service.send_otp.return_value = DeliveryFailed(DeliveryErrorKind.SEND_FAILED)

    with pytest.raises(DeliveryError) as exc_info:
        await service.resend(EMAIL)
    assert exc_info.value.message == "Failed to resend OTP email. Please try again."

    with pytest.raises(VerificationError) as exc_info:
        await service.verify(EMAIL, old_code)
    assert exc_info.value.code == "OTP_NOT_FOUND"


@pytest.mark.asyncio
async def test_store_failure_surfaces_internal_error(service):
    with patch.object(
        OTPRepository,
        "invalidate_all",
        new=AsyncMock(side_effect=OperationalError("DELETE", {}, Exception("db down"))),
    ):
        with pytest.raises(InternalError) as exc_info:
            await service.send(EMAIL)

    assert exc_info.value.code == "INTERNAL_ERROR"
    assert "db down" not in exc_info.value.message


@pytest.mark.asyncio
async def test_gateway_exception_rolls_back_record(service, email_service, db_session):
    email_service.send_otp.side_effect = RuntimeError("transport exploded")

    with pytest.raises(InternalError):
        await service.send(EMAIL)

    assert await OTPRepository(db_session).find_latest(EMAIL) is None


@pytest.mark.asyncio
async def test_cancelled_delivery_rolls_back_record(service, email_service, db_session):
    email_service.send_otp.side_effect = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await service.send(EMAIL)

    assert await OTPRepository(db_session).find_latest(EMAIL) is None


# ──────────────────────────────────────────────────────────
# Rate limiting
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_sixth_issuance_is_rate_limited(service, email_service, clock):
    for i in range(5):
        issue = service.send if i % 2 == 0 else service.resend
        issued = await issue(EMAIL)
        assert issued.remaining_attempts == 4 - i

    with pytest.raises(RateLimitError) as exc_info:
        await service.resend(EMAIL)

    err = exc_info.value
    assert err.code == "RATE_LIMIT_EXCEEDED"
    assert err.status_code == 429
    assert err.extra["blockedUntil"] == (clock.now() + timedelta(hours=1)).isoformat()
    assert email_service.send_otp.await_count == 5

    other = await service.send("other@example.com")
    assert other.remaining_attempts == 4


@pytest.mark.asyncio
async def test_blocked_email_reports_minutes_left(service, clock):
    for _ in range(6):
        try:
            await service.send(EMAIL)
        except RateLimitError:
            pass

    clock.advance(minutes=20)
    with pytest.raises(RateLimitError) as exc_info:
        await service.send(EMAIL)

    assert exc_info.value.code == "RATE_LIMIT_BLOCKED"
    assert "40 minute(s)" in exc_info.value.message


# ──────────────────────────────────────────────────────────
# Verify
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_verify_across_email_variants(service, email_service):
    await service.send("user@EXAMPLE.com ")
    code = sent_code(email_service)

    result = await service.verify("USER@example.com", code)
    assert result.email == EMAIL
    assert result.already_verified is False


@pytest.mark.asyncio
async def test_verify_just_before_expiry(service, email_service, clock):
    await service.send(EMAIL)
    clock.advance(minutes=10, seconds=-1)
    await service.verify(EMAIL, sent_code(email_service))


@pytest.mark.asyncio
async def test_verify_after_expiry(service, email_service, db_session, clock):
    await service.send(EMAIL)
    clock.advance(minutes=10, seconds=1)

    with pytest.raises(VerificationError) as exc_info:
        await service.verify(EMAIL, sent_code(email_service))

    assert exc_info.value.code == "OTP_EXPIRED"
    assert exc_info.value.extra == {"expired": True}
    record = await OTPRepository(db_session).find_latest(EMAIL)
    assert record.attempts == 0
    assert record.verified is False


@pytest.mark.asyncio
async def test_attempts_remaining_counts_down_to_zero(service, email_service):
    await service.send(EMAIL)
    wrong = _other_code(sent_code(email_service))

    remaining = []
    for _ in range(6):
        with pytest.raises(VerificationError) as exc_info:
            await service.verify(EMAIL, wrong)
        assert exc_info.value.code == "INVALID_OTP"
        remaining.append(exc_info.value.extra["attemptsRemaining"])

    assert remaining == [4, 3, 2, 1, 0, 0]


@pytest.mark.asyncio
async def test_reverify_is_idempotent(service, email_service, db_session):
    await service.send(EMAIL)
    code = sent_code(email_service)
    await service.verify(EMAIL, code)

    again = await service.verify(EMAIL, code)
    other = await service.verify(EMAIL, _other_code(code))

    assert again.already_verified is True
    assert other.already_verified is True
    record = await OTPRepository(db_session).find_latest(EMAIL)
    assert record.attempts == 1
    assert record.verified is True


@pytest.mark.asyncio
async def test_verify_without_code_on_record(service):
    with pytest.raises(VerificationError) as exc_info:
        await service.verify(EMAIL, "123456")

    assert exc_info.value.code == "OTP_NOT_FOUND"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "otp", ["12345", "1234567", "12a456", " 123456", "123456\n", "１２３４５６"]
)
async def test_malformed_code_never_reaches_store(service, otp):
    with patch.object(OTPRepository, "find_latest", new_callable=AsyncMock) as find_latest:
        with pytest.raises(InputError) as exc_info:
            await service.verify(EMAIL, otp)

    assert exc_info.value.code == "INVALID_OTP_FORMAT"
    find_latest.assert_not_called()


@pytest.mark.asyncio
async def test_trailing_newline_uses_no_attempt(service, email_service, db_session):
    await service.send(EMAIL)

    with pytest.raises(InputError) as exc_info:
        await service.verify(EMAIL, sent_code(email_service) + "\n")

    assert exc_info.value.code == "INVALID_OTP_FORMAT"
    record = await OTPRepository(db_session).find_latest(EMAIL)
    assert record.attempts == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("email", "code"),
    [
        ("user@example", "INVALID_EMAIL_FORMAT"),
        ("us er@example.com", "INVALID_EMAIL_FORMAT"),
        ("   ", "EMAIL_REQUIRED"),
    ],
)
async def test_verify_rejects_bad_email_before_lookup(service, email, code):
    with patch.object(OTPRepository, "find_latest", new_callable=AsyncMock) as find_latest:
        with pytest.raises(InputError) as exc_info:
            await service.verify(email, "123456")

    assert exc_info.value.code == code
    find_latest.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize(("email", "otp"), [(None, "123456"), (EMAIL, None), ("", "")])
async def test_verify_missing_fields(service, email, otp):
    with pytest.raises(InputError) as exc_info:
        await service.verify(email, otp)
    assert exc_info.value.code == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_code_deleted_mid_verification_does_not_verify(service, email_service, db_session):
    await service.send(EMAIL)
    code = sent_code(email_service)
    store = OTPRepository(db_session)
    original_find = store.find_latest

    async def find_then_resend(email):
        record = await original_find(email)
        await store.invalidate_all(email)
        return record

    with patch.object(OTPRepository, "find_latest", side_effect=find_then_resend):
        with pytest.raises(VerificationError) as exc_info:
            await service.verify(EMAIL, code)

    assert exc_info.value.code == "OTP_NOT_FOUND"


# ──────────────────────────────────────────────────────────
# Consume
# ──────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_consume_clears_all_state(service, email_service, db_session):
    await service.send(EMAIL)
    await service.resend(EMAIL)
    await service.verify(EMAIL, sent_code(email_service))
    assert await service.has_verified(EMAIL)

    await service.consume("User@Example.com")

    assert await OTPRepository(db_session).find_latest(EMAIL) is None
    assert await RateLimitRepository(db_session).get(EMAIL) is None
    issued = await service.send(EMAIL)
    assert issued.remaining_attempts == 4
