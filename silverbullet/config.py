"""Application configuration loaded from environment variables."""

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from silverbullet.core.profile import CABackend, OCSPSignerType, ProfileContext

logger = logging.getLogger(__name__)


def get_default_database_url() -> str:
    """Get the default database URL.

    Returns
    -------
        SQLite connection string inside DATA_DIR
    """
    data_dir = Path(os.getenv("DATA_DIR", "./data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite:///{data_dir}/silverbullet.db"
    logger.info(f"📊 Database: SQLite ({data_dir}/silverbullet.db)")
    return db_url


class Settings(BaseSettings):
    """Application settings from environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. .env file
    3. Defaults defined here
    """

    database_url: str = ""

    # Consortium (O= of every client certificate subject)
    consortium_name: str = "eduroam"
    product_name: str = "Managed IdP"

    # Certificate Authority
    ca_backend: CABackend = CABackend.EMBEDDED
    ca_cert_dir: str = "./config/SilverbulletClientCerts"
    ca_key_passphrase: str = ""
    external_ca_url: str = "https://clientca.hosted.eduroam.org"
    user_key_size: int = 2048
    max_issuance_attempts: int = 5

    # OCSP
    ocsp_signer: OCSPSignerType = OCSPSignerType.BUILTIN
    openssl_path: str = "openssl"
    ocsp_timeout_seconds: float = 5.0
    ocsp_validity_days: int = 10

    # Users and invitations
    default_max_users: int = 200  # Fallback when a profile has no federation limit
    realm_suffix: str = ".hosted.eduroam.org"
    invitation_base_url: str = "http://localhost:8000"
    invitation_validity_days: int = 30
    acknowledgement_required_days: int = 365

    # Profiles (JSON list, stand-in for the attribute resolution layer)
    profiles: str = "[]"

    # Admin API
    admin_api_token: str = ""

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def __init__(self, **data):
        """Initialize settings, resolving the database URL."""
        if not data.get("database_url"):
            env_db_url = os.getenv("DATABASE_URL")
            data["database_url"] = env_db_url or get_default_database_url()
        super().__init__(**data)

    def get_profiles(self) -> dict[int, ProfileContext]:
        """Parse the configured profiles from their JSON document.

        Returns
        -------
            Mapping of profile id to ProfileContext
        """
        if not self.profiles:
            return {}
        try:
            raw_profiles = json.loads(self.profiles)
        except json.JSONDecodeError:
            logger.warning("Failed to parse profiles, returning no profiles")
            return {}

        if not isinstance(raw_profiles, list):
            logger.warning("Profiles must be a JSON list, returning no profiles")
            return {}

        result = {}
        for item in raw_profiles:
            if not isinstance(item, dict):
                logger.warning(f"Skipping profile entry that is not an object: {item!r}")
                continue
            item.setdefault("max_active_users", self.default_max_users)
            item.setdefault("realm_suffix", self.realm_suffix)
            try:
                profile = ProfileContext(**item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid profile entry {item!r}: {e}")
                continue
            result[profile.profile_id] = profile
        return result

    @property
    def ca_path(self) -> Path:
        """Directory holding rootca.pem, real.pem and real.key."""
        return Path(self.ca_cert_dir)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get settings instance (cached after first call)."""
    global _settings
    if _settings is None:
        _settings = Settings()
        logger.info(
            "⚙️  Settings loaded: ca=%s, ocsp=%s, db=%s",
            _settings.ca_backend.value,
            _settings.ocsp_signer.value,
            "MySQL" if "mysql" in _settings.database_url
            else "PostgreSQL" if "postgresql" in _settings.database_url
            else "SQLite",
        )
    return _settings


def reload_settings() -> Settings:
    """Drop the cached settings and load them again from the environment."""
    global _settings
    _settings = None
    return get_settings()
