"""Profile context consumed by the certificate lifecycle engine.

The attribute resolution layer (IdP, federation and profile attributes) lives
outside this service. Everything the engine needs from it is captured here.
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class CABackend(str, Enum):
    """Which CA signs client certificates."""
    EMBEDDED = "embedded"
    EXTERNAL = "external"


class OCSPSignerType(str, Enum):
    """How OCSP responses are manufactured."""
    BUILTIN = "builtin"
    OPENSSL = "openssl"


class ProfileContext(BaseModel):
    """Opaque view of a Silverbullet profile."""

    profile_id: int
    institution_id: int
    federation: str = Field(min_length=2)
    realm: str | None = None
    realm_suffix: str = ".hosted.eduroam.org"
    max_active_users: int = Field(default=200, ge=0)

    @model_validator(mode="after")
    def derive_realm(self) -> "ProfileContext":
        """Compute the realm as <inst>-<profile>.<fed><suffix> when not set."""
        if not self.realm:
            self.realm = (
                f"{self.institution_id}-{self.profile_id}."
                f"{self.federation.lower()}{self.realm_suffix}"
            )
        return self

    @property
    def federation_code(self) -> str:
        """Upper-cased federation code, used as the OU of client certificates."""
        return self.federation.upper()
