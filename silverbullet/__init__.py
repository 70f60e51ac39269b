"""Managed IdP ("Silverbullet") client certificate lifecycle service."""

__version__ = "1.0.0"
