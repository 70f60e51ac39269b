"""Exception hierarchy of the certificate lifecycle engine."""


class SilverbulletError(Exception):
    """Base exception for Silverbullet operations."""


class InvalidTokenError(SilverbulletError):
    """Invitation token is unknown, redeemed, expired or revoked."""


class ProfileMismatchError(SilverbulletError):
    """Invitation belongs to a different profile than the caller's."""


class UserNotFoundError(SilverbulletError):
    """Referenced user does not exist in this profile."""


class ExpiredUserError(SilverbulletError):
    """User account already expired; no certificate may be issued."""


class MaxUsersExceededError(SilverbulletError):
    """Federation limit of active users reached."""


class CertificateNotFoundError(SilverbulletError):
    """No certificate with the given serial number."""


class StorageError(SilverbulletError):
    """Database constraint violation or connectivity failure."""


class UniquenessConflictError(StorageError):
    """A generated serial number or username collided on insert.

    Retryable: the caller should generate fresh values and try again.
    """


class GenerationError(SilverbulletError):
    """Key or CSR generation failed."""


class CASigningError(SilverbulletError):
    """The CA failed to sign a certificate."""


class ExternalCANotImplementedError(SilverbulletError, NotImplementedError):
    """The external CA protocol is not available."""


class OCSPGenerationError(SilverbulletError):
    """An OCSP response could not be produced."""
