"""Core modules for the Silverbullet certificate lifecycle engine."""

from silverbullet.core.errors import SilverbulletError
from silverbullet.core.profile import CABackend, OCSPSignerType, ProfileContext

__all__ = [
    "CABackend",
    "OCSPSignerType",
    "ProfileContext",
    "SilverbulletError",
]
