"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from donorhub_otp.auth.router import router as auth_router
from donorhub_otp.clock import system_clock
from donorhub_otp.config import settings
from donorhub_otp.database.engine import async_session_factory, init_db
from donorhub_otp.database.repository import OTPRepository
from donorhub_otp.errors import OTPServiceError

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


async def purge_stale_otps(session_factory=async_session_factory, clock=system_clock) -> int:
    """Delete codes older than the hard TTL, whatever their ``expires_at``."""
    cutoff = clock.now() - timedelta(seconds=settings.otp_hard_ttl_seconds)
    async with session_factory() as session:
        removed = await OTPRepository(session).purge_stale(cutoff)
    if removed:
        logger.info("Purged %d stale OTP record(s)", removed)
    return removed


async def _sweep_forever() -> None:
    while True:
        await asyncio.sleep(settings.otp_sweep_interval_seconds)
        try:
            await purge_stale_otps()
        except Exception:
            logger.exception("Stale OTP sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    logger.info("Starting %s …", settings.app_name)
    await init_db()
    logger.info("Database initialised")
    sweeper = asyncio.create_task(_sweep_forever())
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    logger.info("Shutting down %s …", settings.app_name)


app = FastAPI(
    title=f"{settings.app_name} OTP",
    description="Email verification by one-time passcode",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(OTPServiceError)
async def otp_error_handler(_request: Request, exc: OTPServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON bodies get the same envelope as domain input errors."""
    logger.info("Rejected malformed request body: %s", exc.errors())
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Invalid request body",
            "errorCode": "INVALID_REQUEST",
        },
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log the failure, return a generic envelope."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "An unexpected error occurred. Please try again.",
            "errorCode": "INTERNAL_ERROR",
        },
    )


app.include_router(auth_router)


@app.get("/health")
async def health_check():
    """Simple liveness probe."""
    return {"status": "healthy", "app": settings.app_name}
