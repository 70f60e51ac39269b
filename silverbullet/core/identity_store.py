"""Persistence of Silverbullet users, invitations and issued certificates.

Generated identities (usernames and serial numbers) rely on the unique
indexes of the certificate table: the lookup loops below only make a
collision unlikely, the insert in `record_certificate` is the authority and
reports a collision as UniquenessConflictError so issuance can be retried.

None of the multi-row operations assume an enclosing transaction; each
mutation commits on its own and is idempotent when repeated.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from silverbullet.core.errors import (
    CertificateNotFoundError,
    GenerationError,
    InvalidTokenError,
    StorageError,
    UniquenessConflictError,
    UserNotFoundError,
)
from silverbullet.core.profile import ProfileContext
from silverbullet.db.models import (
    RevocationStatus,
    SilverbulletCertificate,
    SilverbulletInvitation,
    SilverbulletUser,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# PKIX upper bound for the CN attribute
MAX_COMMON_NAME_LENGTH = 64
USERNAME_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
TOKEN_ALPHABET = "23456789abcdefghijkmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
TOKEN_LENGTH = 64

SERIAL_MIN = 1_000_000_000
SERIAL_MAX = 2**63 - 1


def random_string(length: int, keyspace: str = TOKEN_ALPHABET) -> str:
    """Produce a random string drawn from `keyspace`.

    Args:
        length: Number of characters
        keyspace: Pool of characters to draw from

    Returns:
        Random string of exactly `length` characters

    Raises:
        ValueError: If the keyspace has fewer than two characters
    """
    if len(keyspace) < 2:
        raise ValueError("keyspace must be at least two characters long")
    return "".join(secrets.choice(keyspace) for _ in range(length))


def random_serial() -> int:
    """Draw a serial number from the positive 63-bit range."""
    return SERIAL_MIN + secrets.randbelow(SERIAL_MAX - SERIAL_MIN + 1)


@dataclass(frozen=True)
class CertificateMeta:
    """Metadata of a freshly signed certificate, ready to be stored."""

    serial_number: int
    cn: str
    profile_id: int
    user_id: int
    invitation_id: int
    expiry: datetime
    device: str | None = None


@dataclass(frozen=True)
class CertStatusSnapshot:
    """Stored state of one certificate, as needed for OCSP regeneration."""

    serial_number: int
    cn: str
    profile_id: int
    federation: str
    revocation_status: RevocationStatus
    revocation_time: datetime | None
    expiry: datetime
    cached_ocsp: bytes | None
    ocsp_timestamp: datetime | None

    @property
    def is_revoked(self) -> bool:
        return self.revocation_status == RevocationStatus.REVOKED


class IdentityStore:
    """Database access for users, invitations and certificate records."""

    def __init__(self, db: Session, profiles: dict[int, ProfileContext] | None = None):
        """Initialize the store.

        Args:
            db: SQLAlchemy database session
            profiles: Known profiles, used to resolve the federation of a certificate
        """
        self.db = db
        self.profiles = profiles or {}

    # ------------------------------------------------------------------
    # Identity generation
    # ------------------------------------------------------------------

    def find_unique_username(self, realm: str) -> str:
        """Generate a `<local-part>@<realm>` name unused by any certificate.

        The local part fills the CN up to its 64 character limit.

        Raises:
            GenerationError: If the realm leaves no room for a local part
        """
        local_length = MAX_COMMON_NAME_LENGTH - 1 - len(realm)
        if local_length < 1:
            raise GenerationError(f"Realm {realm!r} is too long for a {MAX_COMMON_NAME_LENGTH} character CN")

        while True:
            username = f"{random_string(local_length, USERNAME_ALPHABET)}@{realm}"
            taken = self.db.query(SilverbulletCertificate.id).filter(
                SilverbulletCertificate.cn == username
            ).first()
            if taken is None:
                return username
            logger.debug("Username collision, drawing again")

    def find_unique_serial(self) -> int:
        """Draw a random serial number not present in storage."""
        while True:
            serial = random_serial()
            taken = self.db.query(SilverbulletCertificate.id).filter(
                SilverbulletCertificate.serial_number == serial
            ).first()
            if taken is None:
                return serial
            logger.debug("Serial collision, drawing again")

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def record_certificate(self, meta: CertificateMeta) -> int:
        """Insert a certificate row and redeem one use of its invitation.

        Both happen in one commit; a token that got exhausted concurrently
        is reported instead of over-redeemed.

        Returns:
            Row id of the new certificate

        Raises:
            InvalidTokenError: If the invitation has no redemption left
            UniquenessConflictError: If serial or CN already exist
            StorageError: On any other database failure
        """
        try:
            claimed = self.db.execute(
                update(SilverbulletInvitation)
                .where(
                    SilverbulletInvitation.id == meta.invitation_id,
                    SilverbulletInvitation.used < SilverbulletInvitation.quantity,
                    SilverbulletInvitation.revoked.is_(False),
                )
                .values(used=SilverbulletInvitation.used + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                self.db.rollback()
                raise InvalidTokenError(f"Invitation {meta.invitation_id} has no redemptions left")

            record = SilverbulletCertificate(
                serial_number=meta.serial_number,
                cn=meta.cn,
                profile_id=meta.profile_id,
                silverbullet_user_id=meta.user_id,
                silverbullet_invitation_id=meta.invitation_id,
                expiry=meta.expiry,
                issued=utc_now(),
                device=meta.device,
                revocation_status=RevocationStatus.NOT_REVOKED.value,
            )
            self.db.add(record)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self._identity_taken(meta):
                raise UniquenessConflictError(
                    f"Serial {meta.serial_number} or CN {meta.cn} already recorded"
                ) from e
            logger.error(f"Certificate insert violated a constraint: {e}")
            raise StorageError(f"Unable to record certificate: {e}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error recording certificate: {e}", exc_info=True)
            raise StorageError(f"Unable to record certificate: {e}") from e

        logger.info(f"Recorded certificate id={record.id} serial={meta.serial_number}")
        return record.id

    def _identity_taken(self, meta: CertificateMeta) -> bool:
        return self.db.query(SilverbulletCertificate.id).filter(
            or_(
                SilverbulletCertificate.serial_number == meta.serial_number,
                SilverbulletCertificate.cn == meta.cn,
            )
        ).first() is not None

    def get_certificate(self, serial: int) -> SilverbulletCertificate:
        """Load a certificate by serial number.

        Raises:
            CertificateNotFoundError: If no such serial exists
        """
        cert = self.db.query(SilverbulletCertificate).filter(
            SilverbulletCertificate.serial_number == serial
        ).first()
        if cert is None:
            raise CertificateNotFoundError(f"No certificate with serial {serial}")
        return cert

    def record_revocation(self, serial: int, timestamp: datetime | None = None) -> bool:
        """Mark a certificate revoked.

        Revoking an already revoked certificate changes nothing; the first
        revocation time is kept.

        Returns:
            True if the status changed, False if it was already revoked
        """
        cert = self.get_certificate(serial)
        if cert.is_revoked:
            logger.debug(f"Certificate {serial} already revoked")
            return False

        cert.revocation_status = RevocationStatus.REVOKED.value
        cert.revocation_time = timestamp or utc_now()
        # The cached statement still says good
        cert.ocsp = None
        cert.ocsp_timestamp = None
        self._commit("record revocation")
        logger.info(f"Certificate {serial} marked revoked")
        return True

    def query_certificate_status(self, serial: int) -> CertStatusSnapshot:
        """Snapshot the stored state of a certificate."""
        cert = self.get_certificate(serial)
        profile = self.profiles.get(cert.profile_id)
        return CertStatusSnapshot(
            serial_number=cert.serial_number,
            cn=cert.cn,
            profile_id=cert.profile_id,
            federation=profile.federation_code if profile else "",
            revocation_status=RevocationStatus(cert.revocation_status),
            revocation_time=ensure_utc(cert.revocation_time),
            expiry=ensure_utc(cert.expiry),
            cached_ocsp=cert.ocsp,
            ocsp_timestamp=ensure_utc(cert.ocsp_timestamp),
        )

    def store_ocsp_response(self, serial: int, response: bytes, timestamp: datetime | None = None) -> None:
        """Persist the latest signed OCSP statement of a certificate."""
        cert = self.get_certificate(serial)
        cert.ocsp = response
        cert.ocsp_timestamp = timestamp or utc_now()
        self._commit("store OCSP response")

    def list_certificates(self, profile_id: int, user_id: int) -> list[SilverbulletCertificate]:
        """All certificates ever issued to a user, oldest first."""
        return (
            self.db.query(SilverbulletCertificate)
            .filter(
                SilverbulletCertificate.profile_id == profile_id,
                SilverbulletCertificate.silverbullet_user_id == user_id,
            )
            .order_by(SilverbulletCertificate.issued, SilverbulletCertificate.id)
            .all()
        )

    def live_certificate_serials(self, profile_id: int, user_id: int, now: datetime | None = None) -> list[int]:
        """Serials of a user's certificates that are neither expired nor revoked."""
        now = now or utc_now()
        rows = self.db.query(SilverbulletCertificate.serial_number).filter(
            SilverbulletCertificate.profile_id == profile_id,
            SilverbulletCertificate.silverbullet_user_id == user_id,
            SilverbulletCertificate.expiry >= now,
            SilverbulletCertificate.revocation_status == RevocationStatus.NOT_REVOKED.value,
        ).all()
        return [row.serial_number for row in rows]

    def unpublished_revocation_serials(self, profile_id: int, user_id: int) -> list[int]:
        """Serials of a user's revoked certificates that have no OCSP statement stored."""
        rows = self.db.query(SilverbulletCertificate.serial_number).filter(
            SilverbulletCertificate.profile_id == profile_id,
            SilverbulletCertificate.silverbullet_user_id == user_id,
            SilverbulletCertificate.revocation_status == RevocationStatus.REVOKED.value,
            SilverbulletCertificate.ocsp.is_(None),
        ).all()
        return [row.serial_number for row in rows]

    def find_user_by_cn(self, cn: str) -> tuple[int, int] | None:
        """Map a certificate username back to (profile_id, user_id)."""
        row = self.db.query(
            SilverbulletCertificate.profile_id,
            SilverbulletCertificate.silverbullet_user_id,
        ).filter(SilverbulletCertificate.cn == cn).first()
        if row is None:
            return None
        return row.profile_id, row.silverbullet_user_id

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, profile_id: int, username: str, expiry: datetime) -> int:
        """Create a user and return its id."""
        user = SilverbulletUser(profile_id=profile_id, username=username, expiry=ensure_utc(expiry))
        self.db.add(user)
        self._commit("add user")
        logger.info(f"Added user {user.id} to profile {profile_id}")
        return user.id

    def get_user(self, profile_id: int, user_id: int) -> SilverbulletUser:
        """Load a user of the given profile.

        Raises:
            UserNotFoundError: If the user does not exist in this profile
        """
        user = self.db.query(SilverbulletUser).filter(
            SilverbulletUser.id == user_id,
            SilverbulletUser.profile_id == profile_id,
        ).first()
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found in profile {profile_id}")
        return user

    def list_users(self, profile_id: int) -> dict[int, str]:
        """Map of user id to admin-chosen username."""
        rows = self.db.query(SilverbulletUser.id, SilverbulletUser.username).filter(
            SilverbulletUser.profile_id == profile_id
        ).order_by(SilverbulletUser.id).all()
        return {row.id: row.username for row in rows}

    def list_active_users(self, profile_id: int, now: datetime | None = None) -> list[int]:
        """Ids of users with an open invitation or a live certificate."""
        now = now or utc_now()
        open_invitation = exists().where(and_(
            SilverbulletInvitation.silverbullet_user_id == SilverbulletUser.id,
            SilverbulletInvitation.expiry >= now,
            SilverbulletInvitation.revoked.is_(False),
        ))
        live_certificate = exists().where(and_(
            SilverbulletCertificate.silverbullet_user_id == SilverbulletUser.id,
            SilverbulletCertificate.expiry >= now,
            SilverbulletCertificate.revocation_status != RevocationStatus.REVOKED.value,
        ))
        stmt = (
            select(SilverbulletUser.id)
            .where(SilverbulletUser.profile_id == profile_id)
            .where(or_(open_invitation, live_certificate))
            .order_by(SilverbulletUser.id)
        )
        return list(self.db.scalars(stmt).all())

    def get_user_expiry(self, profile_id: int, user_id: int) -> datetime:
        return ensure_utc(self.get_user(profile_id, user_id).expiry)

    def set_user_expiry(self, profile_id: int, user_id: int, expiry: datetime) -> None:
        user = self.get_user(profile_id, user_id)
        user.expiry = ensure_utc(expiry)
        self._commit("set user expiry")
        logger.info(f"User {user_id} expiry set to {expiry.isoformat()}")

    def refresh_eligibility(self, profile_id: int, now: datetime | None = None) -> int:
        """Stamp last_ack on every user of the profile.

        Returns:
            Number of users updated
        """
        count = self.db.execute(
            update(SilverbulletUser)
            .where(SilverbulletUser.profile_id == profile_id)
            .values(last_ack=now or utc_now())
            .execution_options(synchronize_session=False)
        ).rowcount
        self._commit("refresh eligibility")
        return count

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, profile_id: int, user_id: int, quantity: int, expiry: datetime) -> SilverbulletInvitation:
        """Create an invitation token for a user."""
        self.get_user(profile_id, user_id)

        token = random_string(TOKEN_LENGTH)
        # Ensure uniqueness
        while self.db.query(SilverbulletInvitation.id).filter(SilverbulletInvitation.token == token).first():
            token = random_string(TOKEN_LENGTH)

        invitation = SilverbulletInvitation(
            token=token,
            profile_id=profile_id,
            silverbullet_user_id=user_id,
            expiry=ensure_utc(expiry),
            quantity=quantity,
            used=0,
        )
        self.db.add(invitation)
        self._commit("create invitation")
        logger.info(f"Created invitation {invitation.id} for user {user_id} ({quantity} devices)")
        return invitation

    def get_invitation_by_token(self, token: str) -> SilverbulletInvitation | None:
        return self.db.query(SilverbulletInvitation).filter(
            SilverbulletInvitation.token == token
        ).first()

    def list_invitations(self, profile_id: int, user_id: int) -> list[SilverbulletInvitation]:
        return (
            self.db.query(SilverbulletInvitation)
            .filter(
                SilverbulletInvitation.profile_id == profile_id,
                SilverbulletInvitation.silverbullet_user_id == user_id,
            )
            .order_by(SilverbulletInvitation.id)
            .all()
        )

    def open_invitation_ids(self, profile_id: int, user_id: int, now: datetime | None = None) -> list[int]:
        """Ids of a user's invitations that have not expired yet."""
        now = now or utc_now()
        rows = self.db.query(SilverbulletInvitation.id).filter(
            SilverbulletInvitation.profile_id == profile_id,
            SilverbulletInvitation.silverbullet_user_id == user_id,
            SilverbulletInvitation.expiry >= now,
            SilverbulletInvitation.revoked.is_(False),
        ).all()
        return [row.id for row in rows]

    def revoke_invitation(self, invitation_id: int, now: datetime | None = None) -> None:
        """Expire an invitation immediately; repeated calls are harmless."""
        invitation = self.db.get(SilverbulletInvitation, invitation_id)
        if invitation is None:
            raise InvalidTokenError(f"Invitation {invitation_id} does not exist")
        now = now or utc_now()
        if ensure_utc(invitation.expiry) > now:
            invitation.expiry = now
        invitation.revoked = True
        self._commit("revoke invitation")
        logger.info(f"Invitation {invitation_id} revoked")

    # ------------------------------------------------------------------

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {action}: {e}", exc_info=True)
            raise StorageError(f"Failed to {action}: {e}") from e
