"""Silverbullet certificate lifecycle.

This module ties the identity store, CSR generator, CA backend and OCSP engine
together into the operations a Managed IdP administrator and an enrolling
end user trigger: issuing a credential package against an invitation token,
revoking certificates, and managing users and their invitations.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import quote

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from sqlalchemy.orm import Session

from silverbullet.config import Settings, get_settings
from silverbullet.core.certificate_authority import (
    CASigner,
    SignedCertificate,
    compute_validity_days,
    get_ca_signer,
)
from silverbullet.core.csr_generator import CSRGenerator, generate_private_key
from silverbullet.core.errors import (
    CertificateNotFoundError,
    ExternalCANotImplementedError,
    InvalidTokenError,
    MaxUsersExceededError,
    ProfileMismatchError,
    UniquenessConflictError,
)
from silverbullet.core.identity_store import CertificateMeta, IdentityStore
from silverbullet.core.ocsp import OCSPSigner, current_statement, get_ocsp_signer, trigger_new_statement
from silverbullet.core.profile import CABackend, ProfileContext
from silverbullet.db.models import (
    InvitationStatus,
    SilverbulletCertificate,
    SilverbulletInvitation,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

REDEEMABLE_STATUSES = (InvitationStatus.VALID, InvitationStatus.PARTIALLY_REDEEMED)


class CertificateStatus(str, Enum):
    """Status of an issued certificate as shown to administrators."""
    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class CertificatePackage:
    """Credential package handed to the enrolling user.

    `certdata` is protected with `import_password` and carries the issuing CA;
    `certdata_clear` is unencrypted and carries issuing CA and root.
    """

    username: str
    certdata: bytes
    certdata_clear: bytes
    expiry: datetime
    certificate_expiry: datetime
    fingerprint: str
    serial: int
    certificate_id: int
    import_password: str = field(repr=False)


@dataclass(frozen=True)
class CertificateDetails:
    """One row of a user's certificate listing."""

    certificate_id: int
    serial_number: int
    cn: str
    device: str | None
    issued: datetime
    expiry: datetime
    status: CertificateStatus
    revocation_time: datetime | None = None


@dataclass(frozen=True)
class UserStatus:
    """Summary of one user for the administrator view."""

    user_id: int
    username: str
    expiry: datetime
    active: bool
    needs_acknowledgement: bool
    certificates: list[CertificateDetails]
    invitations: list[SilverbulletInvitation]


def certificate_status(cert: SilverbulletCertificate, now: datetime | None = None) -> CertificateStatus:
    """Expired wins over revoked."""
    if cert.is_expired(now):
        return CertificateStatus.EXPIRED
    if cert.is_revoked:
        return CertificateStatus.REVOKED
    return CertificateStatus.VALID


def build_pkcs12_bundles(
    username: str,
    private_key,
    signed: SignedCertificate,
    password: str,
) -> tuple[bytes, bytes]:
    """Build the password-protected and the clear PKCS#12 container.

    Returns:
        Tuple of (protected, clear)
    """
    issuer = x509.load_pem_x509_certificate(signed.issuer_pem.encode("utf-8"))
    root = x509.load_pem_x509_certificate(signed.root_pem.encode("utf-8"))
    name = username.encode("utf-8")

    protected = pkcs12.serialize_key_and_certificates(
        name=name,
        key=private_key,
        cert=signed.certificate,
        cas=[issuer],
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )
    clear = pkcs12.serialize_key_and_certificates(
        name=name,
        key=private_key,
        cert=signed.certificate,
        cas=[issuer, root],
        encryption_algorithm=serialization.NoEncryption(),
    )
    return protected, clear


class SilverbulletManager:
    """Certificate lifecycle operations for one Managed IdP profile.

    The manager owns no state beyond its collaborators; every operation reads
    from and writes to the database through the identity store.
    """

    def __init__(
        self,
        db: Session,
        profile: ProfileContext,
        settings: Settings | None = None,
        ca: CASigner | None = None,
        ocsp_signer: OCSPSigner | None = None,
    ):
        """Initialize the manager.

        Args:
            db: Database session
            profile: Profile all operations are scoped to
            settings: Application settings, the cached settings by default
            ca: CA backend, built from settings when omitted
            ocsp_signer: OCSP signer, built from settings on first use when omitted
        """
        self.db = db
        self.profile = profile
        self.settings = settings or get_settings()

        profiles = self.settings.get_profiles()
        profiles[profile.profile_id] = profile
        self.store = IdentityStore(db, profiles)

        self.ca = ca or get_ca_signer(
            self.settings.ca_backend,
            self.store,
            self.settings.ca_path,
            key_passphrase=self.settings.ca_key_passphrase,
            external_url=self.settings.external_ca_url,
        )
        self.csr_generator = CSRGenerator(self.store, self.settings.consortium_name)
        self._ocsp_signer = ocsp_signer

    @property
    def ocsp_signer(self) -> OCSPSigner:
        if self._ocsp_signer is None:
            self._ocsp_signer = get_ocsp_signer(
                self.settings.ocsp_signer,
                self.ca,
                openssl_path=self.settings.openssl_path,
                timeout=self.settings.ocsp_timeout_seconds,
                validity_days=self.settings.ocsp_validity_days,
            )
        return self._ocsp_signer

    @property
    def profile_id(self) -> int:
        return self.profile.profile_id

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def issue_certificate(
        self,
        token: str,
        import_password: str,
        device: str | None = None,
    ) -> CertificatePackage:
        """Redeem an invitation token for a new client certificate.

        Args:
            token: Invitation token presented by the end user
            import_password: Password protecting the PKCS#12 container
            device: Optional device label stored with the certificate

        Returns:
            CertificatePackage with both PKCS#12 containers

        Raises:
            InvalidTokenError: If the token is unknown, expired, revoked or used up
            ProfileMismatchError: If the token belongs to another profile
            UserNotFoundError: If the token's user is gone
            ExpiredUserError: If the user has already expired
            UniquenessConflictError: If no unique identity was found in time
            GenerationError, CASigningError, ExternalCANotImplementedError,
            OCSPGenerationError, StorageError: On failures further down
        """
        now = utc_now()

        invitation = self.store.get_invitation_by_token(token)
        if invitation is None:
            raise InvalidTokenError("Invitation token does not exist")
        status = invitation.status(now)
        if status not in REDEEMABLE_STATUSES:
            raise InvalidTokenError(f"Invitation token is {status.value}")
        if invitation.profile_id != self.profile_id:
            raise ProfileMismatchError(
                f"Invitation belongs to profile {invitation.profile_id}, not {self.profile_id}"
            )

        user = self.store.get_user(self.profile_id, invitation.silverbullet_user_id)
        user_expiry = ensure_utc(user.expiry)
        validity_days = compute_validity_days(user_expiry, now)

        attempts = max(1, self.settings.max_issuance_attempts)
        for attempt in range(1, attempts + 1):
            private_key = generate_private_key(self.settings.user_key_size)
            request = self.csr_generator.generate(private_key, self.profile)
            signed = self.ca.sign(request.csr, validity_days)
            try:
                certificate_id = self.store.record_certificate(CertificateMeta(
                    serial_number=signed.serial,
                    cn=request.username,
                    profile_id=self.profile_id,
                    user_id=user.id,
                    invitation_id=invitation.id,
                    expiry=signed.expiry,
                    device=device,
                ))
                break
            except UniquenessConflictError:
                if attempt == attempts:
                    logger.error(f"Gave up issuing for user {user.id} after {attempts} identity collisions")
                    raise
                logger.warning(f"Identity collision on attempt {attempt}, generating a new one")

        trigger_new_statement(self.store, signed.serial, self.ocsp_signer, self.settings.consortium_name)

        certdata, certdata_clear = build_pkcs12_bundles(
            request.username, private_key, signed, import_password
        )
        fingerprint = signed.certificate.fingerprint(hashes.SHA1()).hex()

        logger.info(
            f"✅ Issued certificate {signed.serial} for user {user.id} "
            f"(profile {self.profile_id}), expires {signed.expiry.isoformat()}"
        )

        return CertificatePackage(
            username=request.username,
            certdata=certdata,
            certdata_clear=certdata_clear,
            expiry=user_expiry,
            certificate_expiry=signed.expiry,
            fingerprint=fingerprint,
            serial=signed.serial,
            certificate_id=certificate_id,
            import_password=import_password,
        )

    def revoke_certificate(self, serial: int) -> dict[str, bytes]:
        """Revoke a certificate and publish the new OCSP statement.

        Revoking twice is allowed and keeps the first revocation time.

        Returns:
            {"ocsp": DER-encoded OCSP response}

        Raises:
            ExternalCANotImplementedError: If the profile uses an external CA
            CertificateNotFoundError: If the serial is unknown to this profile
        """
        if self.ca.backend != CABackend.EMBEDDED:
            raise ExternalCANotImplementedError("Revocation through an external CA is not implemented yet")

        if self.store.get_certificate(serial).profile_id != self.profile_id:
            raise CertificateNotFoundError(f"No certificate with serial {serial} in profile {self.profile_id}")

        self.store.record_revocation(serial)
        self.ca.revoke(serial)
        ocsp_response = trigger_new_statement(
            self.store, serial, self.ocsp_signer, self.settings.consortium_name
        )
        logger.info(f"Certificate {serial} revoked")
        return {"ocsp": ocsp_response}

    def get_ocsp_response(self, serial: int, max_age: timedelta | None = None) -> bytes:
        """Latest OCSP statement for a serial, regenerated when stale."""
        if max_age is None:
            max_age = timedelta(days=self.settings.ocsp_validity_days) / 2
        return current_statement(
            self.store, serial, self.ocsp_signer, self.settings.consortium_name, max_age
        )

    def enumerate_certificates(self, user_id: int, now: datetime | None = None) -> list[CertificateDetails]:
        """List every certificate issued to a user with its current status."""
        now = now or utc_now()
        self.store.get_user(self.profile_id, user_id)
        return [
            CertificateDetails(
                certificate_id=cert.id,
                serial_number=cert.serial_number,
                cn=cert.cn,
                device=cert.device,
                issued=ensure_utc(cert.issued),
                expiry=ensure_utc(cert.expiry),
                status=certificate_status(cert, now),
                revocation_time=ensure_utc(cert.revocation_time),
            )
            for cert in self.store.list_certificates(self.profile_id, user_id)
        ]

    def find_user_by_cn(self, cn: str) -> int | None:
        """User id behind a certificate username, if it belongs to this profile."""
        match = self.store.find_user_by_cn(cn)
        if match is None or match[0] != self.profile_id:
            return None
        return match[1]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, username: str, expiry: datetime) -> int:
        return self.store.add_user(self.profile_id, username, expiry)

    def list_users(self) -> dict[int, str]:
        return self.store.list_users(self.profile_id)

    def list_active_users(self) -> list[int]:
        return self.store.list_active_users(self.profile_id)

    def get_user_expiry(self, user_id: int) -> datetime:
        return self.store.get_user_expiry(self.profile_id, user_id)

    def set_user_expiry(self, user_id: int, expiry: datetime) -> None:
        self.store.set_user_expiry(self.profile_id, user_id, expiry)

    def refresh_eligibility(self) -> int:
        """Record that the administrator re-confirmed all users' eligibility."""
        count = self.store.refresh_eligibility(self.profile_id)
        logger.info(f"Eligibility refreshed for {count} users of profile {self.profile_id}")
        return count

    def needs_acknowledgement(self, user_id: int, now: datetime | None = None) -> bool:
        """True when the user's eligibility was last confirmed too long ago."""
        now = now or utc_now()
        user = self.store.get_user(self.profile_id, user_id)
        confirmed = ensure_utc(user.last_ack or user.created_at)
        return now - confirmed > timedelta(days=self.settings.acknowledgement_required_days)

    def user_status(self, user_id: int, now: datetime | None = None) -> UserStatus:
        now = now or utc_now()
        user = self.store.get_user(self.profile_id, user_id)
        return UserStatus(
            user_id=user.id,
            username=user.username,
            expiry=ensure_utc(user.expiry),
            active=user.id in self.store.list_active_users(self.profile_id, now),
            needs_acknowledgement=self.needs_acknowledgement(user_id, now),
            certificates=self.enumerate_certificates(user_id, now),
            invitations=self.store.list_invitations(self.profile_id, user_id),
        )

    def deactivate_user(self, user_id: int, now: datetime | None = None) -> None:
        """Withdraw every credential of a user.

        Open invitations are expired, live certificates revoked, and the user's
        own expiry is set to now. Each step commits on its own, so a failed run
        can simply be repeated; revoked certificates left without a statement
        get one on the next run.
        """
        now = now or utc_now()
        self.store.get_user(self.profile_id, user_id)

        for invitation_id in self.store.open_invitation_ids(self.profile_id, user_id, now):
            self.store.revoke_invitation(invitation_id, now)
        for serial in self.store.live_certificate_serials(self.profile_id, user_id, now):
            self.revoke_certificate(serial)
        # Revocations of an earlier run whose statement was never signed
        for serial in self.store.unpublished_revocation_serials(self.profile_id, user_id):
            trigger_new_statement(self.store, serial, self.ocsp_signer, self.settings.consortium_name)
        self.store.set_user_expiry(self.profile_id, user_id, now)

        logger.info(f"User {user_id} of profile {self.profile_id} deactivated")

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(
        self,
        user_id: int,
        quantity: int = 1,
        validity_days: int | None = None,
    ) -> SilverbulletInvitation:
        """Create an invitation token for a user.

        Raises:
            UserNotFoundError: If the user does not exist
            MaxUsersExceededError: If the profile already has its maximum of active users
        """
        if quantity < 1:
            raise ValueError("quantity must be at least 1")
        self.store.get_user(self.profile_id, user_id)

        active = self.store.list_active_users(self.profile_id)
        if user_id not in active and len(active) >= self.profile.max_active_users:
            raise MaxUsersExceededError(
                f"Profile {self.profile_id} already has {len(active)} of "
                f"{self.profile.max_active_users} active users"
            )

        days = validity_days if validity_days is not None else self.settings.invitation_validity_days
        expiry = utc_now() + timedelta(days=days)
        return self.store.create_invitation(self.profile_id, user_id, quantity, expiry)

    def revoke_invitation(self, invitation_id: int) -> None:
        invitation = self.db.get(SilverbulletInvitation, invitation_id)
        if invitation is None or invitation.profile_id != self.profile_id:
            raise InvalidTokenError(f"Invitation {invitation_id} does not exist")
        self.store.revoke_invitation(invitation_id)

    def list_invitations(self, user_id: int) -> list[SilverbulletInvitation]:
        return self.store.list_invitations(self.profile_id, user_id)

    def invitation_link(self, token: str) -> str:
        """Link the end user follows to redeem a token."""
        base = self.settings.invitation_base_url.rstrip("/")
        return f"{base}/accountstatus?token={quote(token)}"
