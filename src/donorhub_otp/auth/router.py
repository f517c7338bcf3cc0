"""Auth router — OTP email verification and registration endpoints.

Endpoints
---------
POST /auth/send-otp     → issue and email a new code
POST /auth/resend-otp   → replace the current code with a new one
POST /auth/verify-otp   → check a code
POST /auth/register     → create the account, consuming the verification
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from donorhub_otp.clock import Clock, get_clock
from donorhub_otp.database.engine import get_session
from donorhub_otp.services.email_service import EmailService, get_email_service
from donorhub_otp.services.otp_service import IssuedOTP, OTPService
from donorhub_otp.services.registration import RegistrationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ── Request / response models ────────────────────────────

class EmailRequest(BaseModel):
    email: str | None = None


class VerifyOTPRequest(BaseModel):
    email: str | None = None
    otp: str | None = None

    @field_validator("otp", mode="before")
    @classmethod
    def _otp_as_text(cls, value):
        # Some clients post the code as a JSON number
        return str(value) if isinstance(value, int) and not isinstance(value, bool) else value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    email: str | None = None
    password: str | None = None
    user_type: str | None = Field(default=None, alias="userType")
    email_verified: bool = Field(default=False, alias="emailVerified")


class OTPSentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    expires_at: str = Field(alias="expiresAt")
    remaining_attempts: int | None = Field(
        default=None, alias="remainingAttempts"
    )


class OTPVerifiedResponse(BaseModel):
    success: bool = True
    verified: bool = True
    message: str


class RegisteredUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    email: str
    user_type: str = Field(alias="userType")


class RegisterResponse(BaseModel):
    success: bool = True
    message: str
    user: RegisteredUser


# ── Dependencies ─────────────────────────────────────────

def get_otp_service(
    session: AsyncSession = Depends(get_session),
    email_service: EmailService = Depends(get_email_service),
    clock: Clock = Depends(get_clock),
) -> OTPService:
    return OTPService(session=session, email_service=email_service, clock=clock)


def _sent(issued: IssuedOTP, message: str) -> OTPSentResponse:
    return OTPSentResponse(
        message=message,
        expires_at=issued.expires_at.isoformat(),
        remaining_attempts=issued.remaining_attempts,
    )


# ── Endpoints ────────────────────────────────────────────

@router.post("/send-otp", response_model=OTPSentResponse, response_model_by_alias=True)
async def send_otp(body: EmailRequest, service: OTPService = Depends(get_otp_service)):
    """Email a fresh verification code, invalidating any earlier one."""
    issued = await service.send(body.email)
    return _sent(issued, "OTP sent to your email")


@router.post("/resend-otp", response_model=OTPSentResponse, response_model_by_alias=True)
async def resend_otp(body: EmailRequest, service: OTPService = Depends(get_otp_service)):
    """Same as send-otp; shares its rate limit."""
    issued = await service.resend(body.email)
    return _sent(issued, "New OTP sent to your email")


@router.post("/verify-otp", response_model=OTPVerifiedResponse)
async def verify_otp(body: VerifyOTPRequest, service: OTPService = Depends(get_otp_service)):
    result = await service.verify(body.email, body.otp)
    message = (
        "Email already verified" if result.already_verified else "Email verified successfully"
    )
    return OTPVerifiedResponse(message=message)


@router.post("/register", response_model=RegisterResponse, response_model_by_alias=True)
async def register(
    body: RegisterRequest,
    session: AsyncSession = Depends(get_session),
    service: OTPService = Depends(get_otp_service),
):
    """Create an account for an email that has passed OTP verification."""
    user = await RegistrationService(session, service).register(
        name=body.name,
        email=body.email,
        password=body.password,
        user_type=body.user_type,
        email_verified=body.email_verified,
    )
    return RegisterResponse(
        message="Registration successful! Your email has been verified.",
        user=RegisteredUser(
            id=user.id, name=user.name, email=user.email, user_type=user.user_type
        ),
    )
