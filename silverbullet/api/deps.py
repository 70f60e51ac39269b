"""API dependencies for authentication, settings and database access."""

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from silverbullet.config import Settings, get_settings
from silverbullet.core.profile import ProfileContext
from silverbullet.core.silverbullet import SilverbulletManager
from silverbullet.db.database import get_db

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def get_app_settings() -> Settings:
    """Settings dependency, overridable in tests."""
    return get_settings()


DbSession = Annotated[Session, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]


async def verify_admin_token(
    settings: AppSettings,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),  # noqa: B008
) -> str:
    """Verify the static admin bearer token.

    Returns
    -------
        The accepted token

    Raises
    ------
        HTTPException
            401 without credentials, 403 for a wrong token or a disabled admin API
    """
    if not settings.admin_api_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled",
        )
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, settings.admin_api_token):
        logger.warning("Rejected admin request with an invalid token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )
    return credentials.credentials


def lookup_profile(settings: Settings, profile_id: int) -> ProfileContext:
    """Find a configured profile or answer 404."""
    profile = settings.get_profiles().get(profile_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Profile {profile_id} is not configured",
        )
    return profile


def get_profile_manager(profile_id: int, db: DbSession, settings: AppSettings) -> SilverbulletManager:
    """Manager for the profile named in the request path."""
    return SilverbulletManager(db, lookup_profile(settings, profile_id), settings)


ProfileManager = Annotated[SilverbulletManager, Depends(get_profile_manager)]
