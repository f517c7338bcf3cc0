"""Domain errors raised by the OTP service and rendered by the API layer.

Every error carries a stable machine-readable ``code`` (surfaced to
clients as ``errorCode``), a human-readable message, the HTTP status to
answer with, and optional extra fields merged into the response body.
"""

from __future__ import annotations

from typing import Any


class OTPServiceError(Exception):
    """Base class for all domain errors.

    Attributes:
        code: Machine-readable error code (e.g. ``"OTP_EXPIRED"``).
        message: Human-readable error message.
        status_code: HTTP status code to return.
        extra: Additional response fields (e.g. ``attemptsRemaining``).
    """

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "errorCode": self.code,
            **self.extra,
        }


class InputError(OTPServiceError):
    """Malformed or missing request input (400). No side effects."""

    status_code = 400


class RateLimitError(OTPServiceError):
    """Issuance denied by the rate limiter (429)."""

    status_code = 429


class DeliveryError(OTPServiceError):
    """The code could not be delivered; the stored record was rolled back (500)."""

    status_code = 500

    def __init__(self, code: str, message: str, kind: str) -> None:
        super().__init__(code, message)
        self.kind = kind


class VerificationError(OTPServiceError):
    """Code not found, expired or wrong (400, or 404 when not found)."""

    status_code = 400


class RegistrationError(OTPServiceError):
    """Registration refused because the email is unverified or taken (400)."""

    status_code = 400


class InternalError(OTPServiceError):
    """Unexpected failure; details are logged, never returned (500)."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__("INTERNAL_ERROR", message)
