"""SQLAlchemy database models."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RevocationStatus(str, Enum):
    """Stored revocation state of a certificate (one-way)."""
    NOT_REVOKED = "NOT_REVOKED"
    REVOKED = "REVOKED"


class InvitationStatus(str, Enum):
    """Derived state of an invitation token."""
    VALID = "VALID"
    PARTIALLY_REDEEMED = "PARTIALLY_REDEEMED"
    REDEEMED = "REDEEMED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    INVALID = "INVALID"


class Base(DeclarativeBase):
    """Base class for all database models."""


class SilverbulletUser(Base):
    """End user created by an institution admin.

    The username is the admin's label for the human; it never appears in a
    certificate. Users are soft-expired, never deleted.
    """

    __tablename__ = "silverbullet_user"

    id: Mapped[int] = mapped_column(primary_key=True)
    profile_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_ack: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<SilverbulletUser {self.username} (profile {self.profile_id})>"

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the account expiry has passed."""
        return ensure_utc(self.expiry) < (now or utc_now())


class SilverbulletInvitation(Base):
    """Enrollment token; may be redeemed up to `quantity` times."""

    __tablename__ = "silverbullet_invitation"

    id: Mapped[int] = mapped_column(primary_key=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    profile_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    silverbullet_user_id: Mapped[int] = mapped_column(
        ForeignKey("silverbullet_user.id"), nullable=False, index=True
    )
    expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Device limit and redemption count
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<SilverbulletInvitation {self.id} ({self.used}/{self.quantity})>"

    def status(self, now: datetime | None = None) -> InvitationStatus:
        """Derive the token state from the stored counters and dates."""
        if self.revoked:
            return InvitationStatus.REVOKED
        if self.used >= self.quantity:
            return InvitationStatus.REDEEMED
        if ensure_utc(self.expiry) < (now or utc_now()):
            return InvitationStatus.EXPIRED
        if self.used > 0:
            return InvitationStatus.PARTIALLY_REDEEMED
        return InvitationStatus.VALID


class SilverbulletCertificate(Base):
    """Issued client certificate; kept forever as the audit trail.

    The certificate body and its private key are not stored, only the
    metadata needed for status tracking and the last OCSP statement.
    """

    __tablename__ = "silverbullet_certificate"

    id: Mapped[int] = mapped_column(primary_key=True)
    serial_number: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    profile_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    silverbullet_user_id: Mapped[int] = mapped_column(
        ForeignKey("silverbullet_user.id"), nullable=False, index=True
    )
    silverbullet_invitation_id: Mapped[int] = mapped_column(
        ForeignKey("silverbullet_invitation.id"), nullable=False, index=True
    )
    cn: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    # True cryptographic expiry (notAfter), not the user expiry
    expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issued: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    device: Mapped[str | None] = mapped_column(String(128), nullable=True)

    revocation_status: Mapped[str] = mapped_column(
        String(20),
        default=RevocationStatus.NOT_REVOKED.value,
        nullable=False,
        index=True,
    )
    revocation_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Last signed OCSP statement (DER)
    ocsp: Mapped[bytes | None] = mapped_column("OCSP", LargeBinary, nullable=True)
    ocsp_timestamp: Mapped[datetime | None] = mapped_column(
        "OCSP_timestamp", DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<SilverbulletCertificate {self.serial_number} ({self.revocation_status})>"

    @property
    def is_revoked(self) -> bool:
        return self.revocation_status == RevocationStatus.REVOKED.value

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the certificate's notAfter has passed."""
        return ensure_utc(self.expiry) < (now or utc_now())
