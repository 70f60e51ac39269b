"""API routers for the Silverbullet service."""

from silverbullet.api import admin, enroll

__all__ = [
    "enroll",
    "admin",
]
