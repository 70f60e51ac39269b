"""Administrator endpoints for users, invitations and certificates.

Every route is scoped to one profile and requires the admin bearer token.
"""

import base64
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from silverbullet.api.deps import ProfileManager, verify_admin_token
from silverbullet.core.silverbullet import CertificateDetails, SilverbulletManager
from silverbullet.db.models import SilverbulletInvitation, ensure_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/profiles/{profile_id}", dependencies=[Depends(verify_admin_token)])


# Schemas

class UserCreateRequest(BaseModel):
    """Create a user."""
    username: str = Field(..., min_length=1, max_length=255)
    expiry: datetime


class UserExpiryRequest(BaseModel):
    """Change a user's expiry."""
    expiry: datetime


class UserResponse(BaseModel):
    """User summary."""
    id: int
    username: str
    expiry: datetime | None = None


class UserListResponse(BaseModel):
    """Users of a profile."""
    users: list[UserResponse]
    total: int


class ActiveUsersResponse(BaseModel):
    """Ids of active users against the profile limit."""
    user_ids: list[int]
    total: int
    max_active_users: int


class InvitationCreateRequest(BaseModel):
    """Create an invitation."""
    quantity: int = Field(1, ge=1, le=100)
    validity_days: int | None = Field(None, ge=1, le=365)


class InvitationResponse(BaseModel):
    """Invitation token information."""
    id: int
    token: str
    link: str
    status: str
    quantity: int
    used: int
    expiry: datetime


class CertificateResponse(BaseModel):
    """Issued certificate information."""
    id: int
    serial_number: int
    cn: str
    device: str | None
    issued: datetime
    expiry: datetime
    status: str
    revocation_time: datetime | None


class UserStatusResponse(BaseModel):
    """Full view of one user."""
    id: int
    username: str
    expiry: datetime
    active: bool
    needs_acknowledgement: bool
    certificates: list[CertificateResponse]
    invitations: list[InvitationResponse]


class RevocationResponse(BaseModel):
    """Result of a certificate revocation."""
    serial_number: int
    ocsp: str


class EligibilityResponse(BaseModel):
    """Result of an eligibility refresh."""
    updated: int


def _invitation_response(manager: SilverbulletManager, invitation: SilverbulletInvitation) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        token=invitation.token,
        link=manager.invitation_link(invitation.token),
        status=invitation.status().value,
        quantity=invitation.quantity,
        used=invitation.used,
        expiry=ensure_utc(invitation.expiry),
    )


def _certificate_response(details: CertificateDetails) -> CertificateResponse:
    return CertificateResponse(
        id=details.certificate_id,
        serial_number=details.serial_number,
        cn=details.cn,
        device=details.device,
        issued=details.issued,
        expiry=details.expiry,
        status=details.status.value,
        revocation_time=details.revocation_time,
    )


# Users

@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def add_user(request: UserCreateRequest, manager: ProfileManager) -> UserResponse:
    user_id = manager.add_user(request.username, request.expiry)
    return UserResponse(id=user_id, username=request.username, expiry=manager.get_user_expiry(user_id))


@router.get("/users", response_model=UserListResponse)
async def list_users(manager: ProfileManager) -> UserListResponse:
    users = [UserResponse(id=user_id, username=name) for user_id, name in manager.list_users().items()]
    return UserListResponse(users=users, total=len(users))


@router.get("/users/active", response_model=ActiveUsersResponse)
async def list_active_users(manager: ProfileManager) -> ActiveUsersResponse:
    user_ids = manager.list_active_users()
    return ActiveUsersResponse(
        user_ids=user_ids,
        total=len(user_ids),
        max_active_users=manager.profile.max_active_users,
    )


@router.get("/users/{user_id}", response_model=UserStatusResponse)
async def get_user_status(user_id: int, manager: ProfileManager) -> UserStatusResponse:
    user = manager.user_status(user_id)
    return UserStatusResponse(
        id=user.user_id,
        username=user.username,
        expiry=user.expiry,
        active=user.active,
        needs_acknowledgement=user.needs_acknowledgement,
        certificates=[_certificate_response(details) for details in user.certificates],
        invitations=[_invitation_response(manager, invitation) for invitation in user.invitations],
    )


@router.put("/users/{user_id}/expiry", response_model=UserResponse)
async def set_user_expiry(
    user_id: int,
    request: UserExpiryRequest,
    manager: ProfileManager,
) -> UserResponse:
    manager.set_user_expiry(user_id, request.expiry)
    user = manager.user_status(user_id)
    return UserResponse(id=user.user_id, username=user.username, expiry=user.expiry)


@router.post("/users/{user_id}/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_user(user_id: int, manager: ProfileManager) -> Response:
    """Revoke all certificates and invitations of a user and expire it now."""
    manager.deactivate_user(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/eligibility", response_model=EligibilityResponse)
async def refresh_eligibility(manager: ProfileManager) -> EligibilityResponse:
    return EligibilityResponse(updated=manager.refresh_eligibility())


# Invitations

@router.post(
    "/users/{user_id}/invitations",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invitation(
    user_id: int,
    request: InvitationCreateRequest,
    manager: ProfileManager,
) -> InvitationResponse:
    invitation = manager.create_invitation(user_id, request.quantity, request.validity_days)
    return _invitation_response(manager, invitation)


@router.get("/users/{user_id}/invitations", response_model=list[InvitationResponse])
async def list_invitations(user_id: int, manager: ProfileManager) -> list[InvitationResponse]:
    manager.user_status(user_id)
    return [_invitation_response(manager, invitation) for invitation in manager.list_invitations(user_id)]


@router.delete("/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_invitation(invitation_id: int, manager: ProfileManager) -> Response:
    manager.revoke_invitation(invitation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Certificates

@router.get("/users/{user_id}/certificates", response_model=list[CertificateResponse])
async def list_certificates(user_id: int, manager: ProfileManager) -> list[CertificateResponse]:
    return [_certificate_response(details) for details in manager.enumerate_certificates(user_id)]


@router.post("/certificates/{serial}/revoke", response_model=RevocationResponse)
async def revoke_certificate(serial: int, manager: ProfileManager) -> RevocationResponse:
    result = manager.revoke_certificate(serial)
    return RevocationResponse(
        serial_number=serial,
        ocsp=base64.b64encode(result["ocsp"]).decode("ascii"),
    )
