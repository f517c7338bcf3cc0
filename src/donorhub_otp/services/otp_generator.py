"""OTP code generation and expiry calculation."""

import secrets
from datetime import datetime, timedelta

CODE_MIN = 100_000
CODE_MAX = 999_999


def generate_code() -> str:
    """Return a 6-digit code drawn uniformly from 100000–999999."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def expiry(minutes: int, now: datetime) -> datetime:
    """Absolute expiry timestamp *minutes* after *now*."""
    return now + timedelta(minutes=minutes)
