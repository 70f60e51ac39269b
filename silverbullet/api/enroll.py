"""End-user enrollment and OCSP endpoints."""

import base64
import logging
from datetime import datetime

from fastapi import APIRouter, Response, status
from pydantic import BaseModel, Field

from silverbullet.api.deps import AppSettings, DbSession, lookup_profile
from silverbullet.core.errors import InvalidTokenError
from silverbullet.core.identity_store import IdentityStore
from silverbullet.core.silverbullet import SilverbulletManager

logger = logging.getLogger(__name__)

router = APIRouter()
ocsp_router = APIRouter()

OCSP_MEDIA_TYPE = "application/ocsp-response"


# Schemas

class EnrollRequest(BaseModel):
    """Redeem an invitation token."""
    token: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)
    device: str | None = Field(None, max_length=128)


class EnrollResponse(BaseModel):
    """Issued credential package; containers are base64 encoded."""
    username: str
    serial_number: int
    certificate_id: int
    fingerprint: str
    expiry: datetime
    certificate_expiry: datetime
    pkcs12: str
    pkcs12_clear: str


# Endpoints

@router.post("/enroll", response_model=EnrollResponse, status_code=status.HTTP_201_CREATED)
async def enroll(request: EnrollRequest, db: DbSession, settings: AppSettings) -> EnrollResponse:
    """Issue a client certificate against an invitation token."""
    invitation = IdentityStore(db).get_invitation_by_token(request.token)
    if invitation is None:
        raise InvalidTokenError("Invitation token does not exist")

    manager = SilverbulletManager(db, lookup_profile(settings, invitation.profile_id), settings)
    package = manager.issue_certificate(request.token, request.password, request.device)

    return EnrollResponse(
        username=package.username,
        serial_number=package.serial,
        certificate_id=package.certificate_id,
        fingerprint=package.fingerprint,
        expiry=package.expiry,
        certificate_expiry=package.certificate_expiry,
        pkcs12=base64.b64encode(package.certdata).decode("ascii"),
        pkcs12_clear=base64.b64encode(package.certdata_clear).decode("ascii"),
    )


@ocsp_router.get("/ocsp/{serial}")
async def ocsp_response(serial: int, db: DbSession, settings: AppSettings) -> Response:
    """Current DER-encoded OCSP statement for a certificate serial."""
    cert = IdentityStore(db).get_certificate(serial)
    manager = SilverbulletManager(db, lookup_profile(settings, cert.profile_id), settings)
    return Response(content=manager.get_ocsp_response(serial), media_type=OCSP_MEDIA_TYPE)
