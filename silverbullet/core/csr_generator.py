"""Certificate signing request generation for Silverbullet client certificates.

Every request carries a fresh pseudonym `<random>@<realm>` as both CN and
emailAddress; the admin-chosen username never appears in the subject.
"""

import logging
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from silverbullet.core.errors import GenerationError
from silverbullet.core.identity_store import IdentityStore
from silverbullet.core.profile import ProfileContext

logger = logging.getLogger(__name__)

USER_KEY_SIZE = 2048


@dataclass(frozen=True)
class GeneratedRequest:
    """A signing request and the unique username it was built for."""

    csr: x509.CertificateSigningRequest
    username: str


def generate_private_key(key_size: int = USER_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate the RSA key pair of a client certificate.

    Raises:
        GenerationError: If the key cannot be generated
    """
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except (ValueError, TypeError) as e:
        raise GenerationError(f"Private key generation failed: {e}") from e


def build_subject(consortium_name: str, federation_code: str, username: str) -> x509.Name:
    """O=<consortium>/OU=<FEDERATION>/CN=<username>/emailAddress=<username>."""
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, consortium_name),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, federation_code.upper()),
        x509.NameAttribute(NameOID.COMMON_NAME, username),
        x509.NameAttribute(NameOID.EMAIL_ADDRESS, username),
    ])


class CSRGenerator:
    """Builds leaf certificate requests with collision-free identities."""

    def __init__(self, store: IdentityStore, consortium_name: str):
        """Initialize the generator.

        Args:
            store: Identity store used to find an unused username
            consortium_name: Organization name put into every subject
        """
        self.store = store
        self.consortium_name = consortium_name

    def generate(self, private_key: rsa.RSAPrivateKey, profile: ProfileContext) -> GeneratedRequest:
        """Create a CSR for the profile's realm.

        Args:
            private_key: Key the request is signed with
            profile: Profile providing realm and federation

        Returns:
            GeneratedRequest with the CSR and the generated username

        Raises:
            GenerationError: If the subject or key is rejected
        """
        username = self.store.find_unique_username(profile.realm)
        logger.debug(f"Generating CSR for profile {profile.profile_id}")

        try:
            csr = (
                x509.CertificateSigningRequestBuilder()
                .subject_name(build_subject(self.consortium_name, profile.federation_code, username))
                .add_extension(
                    x509.BasicConstraints(ca=False, path_length=None),
                    critical=False,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=True,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=False,
                )
                .sign(private_key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            logger.error(f"Unable to create a CSR: {e}")
            raise GenerationError(f"Unable to create a CSR: {e}") from e

        return GeneratedRequest(csr=csr, username=username)
