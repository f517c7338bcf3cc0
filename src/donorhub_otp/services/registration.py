"""Registration — creates an account once its email has been verified by OTP."""

from __future__ import annotations

import logging
import time

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from donorhub_otp.database.repository import UserRepository, normalize_email
from donorhub_otp.errors import InputError, InternalError, OTPServiceError, RegistrationError
from donorhub_otp.models.user import User
from donorhub_otp.services.otp_service import OTPService

logger = logging.getLogger(__name__)

_BCRYPT_ROUNDS = 12


def hash_password(password: str) -> str:
    """Salted bcrypt hash of *password*, as text."""
    # bcrypt reads at most 72 bytes and newer releases reject longer input
    return bcrypt.hashpw(
        password.encode()[:72], bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)
    ).decode()


def _already_registered() -> RegistrationError:
    return RegistrationError(
        "EMAIL_ALREADY_REGISTERED",
        "This email is already registered. Please login instead.",
    )


class RegistrationService:
    """Downstream consumer of a verified OTP.

    A successful registration consumes the verification: every OTP code
    and the rate-limit counter for the address are deleted.
    """

    def __init__(self, session: AsyncSession, otp_service: OTPService) -> None:
        self._session = session
        self._users = UserRepository(session)
        self._otp = otp_service

    async def register(
        self,
        name: str | None,
        email: str | None,
        password: str | None,
        user_type: str | None = None,
        email_verified: bool = False,
    ) -> User:
        if not name or not email or not password:
            raise InputError("MISSING_FIELDS", "Name, email, and password are required")

        email = normalize_email(email)
        if not email_verified:
            logger.warning("Registration attempted with unverified email: %s", email)
            raise RegistrationError(
                "EMAIL_NOT_VERIFIED",
                "Please verify your email with OTP before registering",
            )

        started = time.monotonic()
        try:
            if not await self._otp.has_verified(email):
                logger.warning("No verified OTP on record for %s", email)
                raise RegistrationError(
                    "OTP_VERIFICATION_NOT_FOUND",
                    "Email verification not found. Please verify your email with OTP",
                )

            if await self._users.find_by_email(email) is not None:
                logger.warning("User already exists: %s", email)
                raise _already_registered()

            try:
                user = await self._users.create(
                    name=name,
                    email=email,
                    password_hash=hash_password(password),
                    user_type=user_type or "donor",
                )
            except IntegrityError as exc:
                await self._session.rollback()
                logger.warning("Concurrent registration for %s", email)
                raise _already_registered() from exc

            await self._otp.consume(email)
        except OTPServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error registering %s after %.0fms",
                email,
                (time.monotonic() - started) * 1000,
            )
            raise InternalError(
                "An unexpected error occurred during registration. Please try again."
            ) from exc

        logger.info(
            "Registered %s in %.0fms", email, (time.monotonic() - started) * 1000
        )
        return user
