"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from silverbullet import __version__
from silverbullet.api import admin, enroll
from silverbullet.config import get_settings
from silverbullet.core.errors import (
    CASigningError,
    CertificateNotFoundError,
    ExpiredUserError,
    ExternalCANotImplementedError,
    GenerationError,
    InvalidTokenError,
    MaxUsersExceededError,
    OCSPGenerationError,
    ProfileMismatchError,
    SilverbulletError,
    StorageError,
    UniquenessConflictError,
    UserNotFoundError,
)
from silverbullet.db.database import init_db

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[SilverbulletError], int] = {
    InvalidTokenError: 400,
    ProfileMismatchError: 403,
    UserNotFoundError: 404,
    CertificateNotFoundError: 404,
    MaxUsersExceededError: 409,
    UniquenessConflictError: 409,
    ExpiredUserError: 410,
    ExternalCANotImplementedError: 501,
    GenerationError: 502,
    CASigningError: 502,
    OCSPGenerationError: 502,
    StorageError: 503,
}


def error_status_code(exc: SilverbulletError) -> int:
    """HTTP status for a lifecycle error, walking up its class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    # Startup
    logger.info("Starting Silverbullet certificate service...")

    logger.info("Initializing database...")
    init_db()

    settings = get_settings()
    profiles = settings.get_profiles()
    logger.info(f"CA backend: {settings.ca_backend.value}, OCSP signer: {settings.ocsp_signer.value}")
    logger.info(f"Profiles configured: {sorted(profiles) or 'none'}")

    yield

    # Shutdown
    logger.info("Shutting down Silverbullet certificate service...")


# Create FastAPI application
app = FastAPI(
    title="Silverbullet",
    description="Client certificate lifecycle for Managed IdP profiles",
    version=__version__,
    lifespan=lifespan,
)

# Include API routers
app.include_router(enroll.router, prefix="/api", tags=["Enrollment"])
app.include_router(enroll.ocsp_router, tags=["OCSP"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "service": "silverbullet"}


@app.exception_handler(SilverbulletError)
async def silverbullet_exception_handler(request: Request, exc: SilverbulletError):
    """Translate lifecycle errors into HTTP responses."""
    status_code = error_status_code(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please try again later."},
    )
