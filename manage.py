"""Maintenance commands — inspect stored codes and reset rate limits.

Usage::

    python manage.py list-otps [EMAIL]
    python manage.py reset-rate-limit [EMAIL]
"""

import argparse
import asyncio

from donorhub_otp.clock import system_clock
from donorhub_otp.database.engine import async_session_factory, init_db
from donorhub_otp.database.repository import (
    OTPRepository,
    RateLimitRepository,
    normalize_email,
)


async def list_otps(email: str | None) -> None:
    """Print stored OTP codes, newest first."""
    await init_db()
    async with async_session_factory() as session:
        records = await OTPRepository(session).list_for(email)

    print(f"OTPs for: {normalize_email(email)}\n" if email else "All OTPs:\n")
    if not records:
        print("No OTPs found.")
        return

    now = system_clock.now()
    for index, record in enumerate(records, start=1):
        print(f"{index}. Email: {record.email}")
        print(f"   OTP Code: {record.code}")
        print(f"   Verified: {'Yes' if record.verified else 'No'}")
        print(f"   Attempts: {record.attempts}")
        print(f"   Expires: {record.expires_at.isoformat()}")
        print(f"   Status: {'EXPIRED' if record.is_expired(now) else 'ACTIVE'}\n")


async def reset_rate_limit(email: str | None) -> None:
    """Delete rate-limit counters and OTP codes for one email, or all of them."""
    await init_db()
    async with async_session_factory() as session:
        counters = await RateLimitRepository(session).delete_for(email)
        otps = OTPRepository(session)
        if email:
            codes = await otps.invalidate_all(email)
        else:
            codes = await otps.purge_stale(system_clock.now())

    target = normalize_email(email) if email else "all emails"
    print(f"✅ Reset rate limit for: {target}")
    print(f"  - Deleted {counters} rate limit record(s)")
    print(f"  - Deleted {codes} OTP record(s)")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)
    for name in ("list-otps", "reset-rate-limit"):
        cmd = sub.add_parser(name)
        cmd.add_argument("email", nargs="?", default=None)
    args = parser.parse_args()

    if args.command == "list-otps":
        asyncio.run(list_otps(args.email))
    else:
        asyncio.run(reset_rate_limit(args.email))


if __name__ == "__main__":
    main()
