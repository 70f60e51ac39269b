"""Database module for the Silverbullet service."""

from silverbullet.db.database import get_db, init_db
from silverbullet.db.models import (
    Base,
    SilverbulletCertificate,
    SilverbulletInvitation,
    SilverbulletUser,
)

__all__ = [
    "Base",
    "SilverbulletUser",
    "SilverbulletInvitation",
    "SilverbulletCertificate",
    "get_db",
    "init_db",
]
