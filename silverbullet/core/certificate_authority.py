"""Certificate Authority backends for Silverbullet client certificates.

The CA is selected through the CABackend tag:

- EMBEDDED: a local two-tier CA. Key material lives in the CA directory as
  `rootca.pem` (trust anchor), `real.pem` (issuing CA) and `real.key`
  (issuing CA private key, optionally passphrase protected).
- EXTERNAL: a remote signing service reached over HTTPS. The protocol is not
  available yet; every operation fails immediately with
  ExternalCANotImplementedError.

Security Features:
- SHA-256 signature algorithm
- Leaf certificates restricted to TLS client authentication
- Random 63-bit serial numbers, unique across the certificate table
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from silverbullet.core.errors import CASigningError, ExpiredUserError, ExternalCANotImplementedError
from silverbullet.core.identity_store import IdentityStore
from silverbullet.core.profile import CABackend

logger = logging.getLogger(__name__)

ROOT_CA_FILE = "rootca.pem"
ISSUING_CA_FILE = "real.pem"
ISSUING_KEY_FILE = "real.key"


@dataclass(frozen=True)
class CAMaterial:
    """Trust anchor plus issuing CA certificate and key."""

    root_cert: x509.Certificate
    issuing_cert: x509.Certificate
    issuing_key: rsa.RSAPrivateKey

    @property
    def root_pem(self) -> str:
        return self.root_cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")

    @property
    def issuing_pem(self) -> str:
        return self.issuing_cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


@dataclass(frozen=True)
class SignedCertificate:
    """Result of signing a CSR: the certificate and the chain to trust it."""

    certificate: x509.Certificate
    serial: int
    issuer_pem: str
    root_pem: str

    @property
    def expiry(self) -> datetime:
        return self.certificate.not_valid_after_utc


class CASigner(Protocol):
    """Interface every CA backend implements."""

    backend: CABackend

    def sign(self, csr: x509.CertificateSigningRequest, validity_days: int) -> SignedCertificate:
        """Sign a CSR for `validity_days` days."""
        ...

    def revoke(self, serial: int) -> None:
        """Inform the CA that a certificate is revoked."""
        ...


def compute_validity_days(user_expiry: datetime, now: datetime | None = None) -> int:
    """Days a new certificate stays valid for a user expiring at `user_expiry`.

    Computed as the ceiling of the remaining days plus one.

    Raises:
        ExpiredUserError: If the user has already expired
    """
    now = now or datetime.now(timezone.utc)
    if user_expiry.tzinfo is None:
        user_expiry = user_expiry.replace(tzinfo=timezone.utc)
    delta = user_expiry - now
    if delta < timedelta(0):
        raise ExpiredUserError(
            f"Attempt to generate a certificate for a user which expired at {user_expiry.isoformat()}"
        )
    return math.ceil(delta / timedelta(days=1)) + 1


def load_ca_material(ca_dir: Path, key_passphrase: str | None = None) -> CAMaterial:
    """Read the embedded CA's certificates and key from disk.

    Raises:
        CASigningError: If a file is missing or cannot be parsed
    """
    try:
        root_cert = x509.load_pem_x509_certificate((ca_dir / ROOT_CA_FILE).read_bytes())
        issuing_cert = x509.load_pem_x509_certificate((ca_dir / ISSUING_CA_FILE).read_bytes())
        issuing_key = serialization.load_pem_private_key(
            (ca_dir / ISSUING_KEY_FILE).read_bytes(),
            password=key_passphrase.encode("utf-8") if key_passphrase else None,
        )
    except (OSError, ValueError, TypeError) as e:
        logger.error(f"Failed to load CA material from {ca_dir}: {e}")
        raise CASigningError(f"Unable to load CA material: {e}") from e

    return CAMaterial(root_cert=root_cert, issuing_cert=issuing_cert, issuing_key=issuing_key)


def _ca_certificate(
    subject: x509.Name,
    issuer: x509.Name,
    public_key: rsa.RSAPublicKey,
    signing_key: rsa.RSAPrivateKey,
    validity_days: int,
    path_length: int,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=path_length), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_cert_sign=True,
                crl_sign=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()),
            critical=False,
        )
        .sign(signing_key, hashes.SHA256())
    )


def bootstrap_ca_material(
    ca_dir: Path,
    organization: str,
    validity_days: int = 3650,
    key_size: int = 4096,
) -> CAMaterial:
    """Generate a root and an issuing CA and write them into `ca_dir`.

    Existing files are overwritten. The issuing key is written unencrypted
    with mode 0600.
    """
    logger.info(f"Generating embedded CA hierarchy in {ca_dir} (RSA {key_size}-bit)")
    ca_dir.mkdir(parents=True, exist_ok=True)

    root_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    root_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, f"{organization} Managed IdP Root CA"),
    ])
    root_cert = _ca_certificate(root_name, root_name, root_key.public_key(), root_key, validity_days, 1)

    issuing_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    issuing_name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, f"{organization} Managed IdP Client CA"),
    ])
    issuing_cert = _ca_certificate(
        issuing_name, root_name, issuing_key.public_key(), root_key, validity_days, 0
    )

    (ca_dir / ROOT_CA_FILE).write_bytes(root_cert.public_bytes(serialization.Encoding.PEM))
    (ca_dir / ISSUING_CA_FILE).write_bytes(issuing_cert.public_bytes(serialization.Encoding.PEM))
    key_path = ca_dir / ISSUING_KEY_FILE
    key_path.write_bytes(
        issuing_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)

    logger.info(f"✅ Embedded CA ready. Issuer fingerprint: {issuing_cert.fingerprint(hashes.SHA256()).hex()[:16]}...")
    return CAMaterial(root_cert=root_cert, issuing_cert=issuing_cert, issuing_key=issuing_key)


class EmbeddedCA:
    """Local CA signing client certificates with the issuing CA key."""

    backend = CABackend.EMBEDDED

    def __init__(self, ca_dir: Path, store: IdentityStore, key_passphrase: str | None = None):
        """Initialize the embedded CA.

        Args:
            ca_dir: Directory holding rootca.pem, real.pem and real.key
            store: Identity store used to allocate unique serial numbers
            key_passphrase: Passphrase of real.key, if encrypted
        """
        self.ca_dir = Path(ca_dir)
        self.store = store
        self.key_passphrase = key_passphrase or None
        self._material: CAMaterial | None = None

    @property
    def material(self) -> CAMaterial:
        """CA certificates and key, loaded on first use."""
        if self._material is None:
            self._material = load_ca_material(self.ca_dir, self.key_passphrase)
        return self._material

    def sign(self, csr: x509.CertificateSigningRequest, validity_days: int) -> SignedCertificate:
        """Sign a CSR into a client certificate.

        Args:
            csr: Request produced by the CSR generator
            validity_days: Days until the certificate expires

        Returns:
            SignedCertificate with the issuing CA and root as chain

        Raises:
            CASigningError: If the request is invalid or signing fails
        """
        material = self.material

        if not csr.is_signature_valid:
            raise CASigningError("CSR signature is not valid")

        serial = self.store.find_unique_serial()
        logger.debug(f"Signing imminent with unique serial {serial}")

        now = datetime.now(timezone.utc)
        try:
            cert = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .issuer_name(material.issuing_cert.subject)
                .public_key(csr.public_key())
                .serial_number(serial)
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=validity_days))
                .add_extension(
                    x509.BasicConstraints(ca=False, path_length=None),
                    critical=True,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_encipherment=True,
                        key_cert_sign=False,
                        crl_sign=False,
                        content_commitment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(csr.public_key()),
                    critical=False,
                )
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(material.issuing_key.public_key()),
                    critical=False,
                )
                .sign(material.issuing_key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to sign certificate: {e}", exc_info=True)
            raise CASigningError(f"Certificate signing failed: {e}") from e

        logger.info(f"✅ Certificate signed. Serial: {serial}, valid for {validity_days} days")

        return SignedCertificate(
            certificate=cert,
            serial=serial,
            issuer_pem=material.issuing_pem,
            root_pem=material.root_pem,
        )

    def revoke(self, serial: int) -> None:
        """Nothing to tell: revocation state lives in the certificate table."""


class ExternalCA:
    """Remote CA reached over HTTPS.

    Planned protocol:
    - POST <base>/issue/ with csr and expiry days, answered by a PEM certificate
    - POST <base>/revoke/ with the serial
    - POST <base>/ocsp/ with the serial, answered by a DER OCSP response
    """

    backend = CABackend.EXTERNAL

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def _not_implemented(self, operation: str) -> ExternalCANotImplementedError:
        logger.error(f"External CA {operation} requested, but the external CA protocol is not implemented")
        return ExternalCANotImplementedError(
            f"External CA is not implemented yet ({operation} via {self.base_url})"
        )

    def sign(self, csr: x509.CertificateSigningRequest, validity_days: int) -> SignedCertificate:
        raise self._not_implemented("issue")

    def revoke(self, serial: int) -> None:
        raise self._not_implemented("revoke")

    def ocsp_statement(self, serial: int) -> bytes:
        raise self._not_implemented("ocsp")


def get_ca_signer(
    backend: CABackend,
    store: IdentityStore,
    ca_dir: Path,
    key_passphrase: str | None = None,
    external_url: str = "",
) -> CASigner:
    """Instantiate the CA implementation selected by `backend`."""
    if backend == CABackend.EMBEDDED:
        return EmbeddedCA(ca_dir, store, key_passphrase)
    if backend == CABackend.EXTERNAL:
        return ExternalCA(external_url)
    raise ValueError(f"Unknown CA backend: {backend}")
