"""OCSP status derivation and response signing.

There is no separate OCSP database. The status of a certificate is derived
from its row in the certificate table every time a statement is requested:

    E  expired: now is past the certificate's notAfter (wins over revocation)
    R  revoked: a revocation was recorded
    V  valid:   anything else

The derived state is written out as one line of an OpenSSL CA index file.
The line is what `openssl ocsp` consumes when the OpenSSL signer is used; the
in-process signer builds the same statement with `cryptography` directly.
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp

from silverbullet.core.certificate_authority import (
    ISSUING_CA_FILE,
    ISSUING_KEY_FILE,
    CAMaterial,
    CASigner,
    EmbeddedCA,
)
from silverbullet.core.errors import ExternalCANotImplementedError, OCSPGenerationError
from silverbullet.core.identity_store import CertStatusSnapshot, IdentityStore
from silverbullet.core.profile import OCSPSignerType

logger = logging.getLogger(__name__)

INDEX_TIME_FORMAT = "%y%m%d%H%M%SZ"
DEFAULT_RESPONSE_VALIDITY_DAYS = 10


class OCSPStatus(str, Enum):
    """One-character status codes of the CA index file."""
    VALID = "V"
    REVOKED = "R"
    EXPIRED = "E"


_CERT_STATUS = {
    OCSPStatus.VALID: ocsp.OCSPCertStatus.GOOD,
    OCSPStatus.REVOKED: ocsp.OCSPCertStatus.REVOKED,
    # openssl ocsp has no answer for expired index entries; unknown is the closest
    OCSPStatus.EXPIRED: ocsp.OCSPCertStatus.UNKNOWN,
}


def compute_status(snapshot: CertStatusSnapshot, now: datetime | None = None) -> OCSPStatus:
    """Derive the current status code from stored state."""
    now = now or datetime.now(timezone.utc)
    if now > snapshot.expiry:
        return OCSPStatus.EXPIRED
    if snapshot.is_revoked:
        return OCSPStatus.REVOKED
    return OCSPStatus.VALID


def serial_to_hex(serial: int) -> str:
    """Upper-case hex serial padded to an even number of digits."""
    serial_hex = format(serial, "X")
    if len(serial_hex) % 2 == 1:
        serial_hex = "0" + serial_hex
    return serial_hex


def build_index_line(
    snapshot: CertStatusSnapshot,
    status: OCSPStatus,
    organization: str,
    now: datetime | None = None,
) -> str:
    """Render a certificate's state as an OpenSSL CA index.txt line."""
    now = now or datetime.now(timezone.utc)
    revocation = ""
    if status == OCSPStatus.REVOKED:
        revoked_at = snapshot.revocation_time or now
        revocation = f"{revoked_at.strftime(INDEX_TIME_FORMAT)},unspecified"
    subject = (
        f"/O={organization}/OU={snapshot.federation}"
        f"/CN={snapshot.cn}/emailAddress={snapshot.cn}"
    )
    return "\t".join([
        status.value,
        snapshot.expiry.strftime(INDEX_TIME_FORMAT),
        revocation,
        serial_to_hex(snapshot.serial_number),
        "unknown",
        subject,
    ]) + "\n"


@dataclass(frozen=True)
class OCSPStatement:
    """Everything a signer needs to produce the response for one serial."""

    snapshot: CertStatusSnapshot
    status: OCSPStatus
    index_line: str
    produced_at: datetime

    @property
    def serial(self) -> int:
        return self.snapshot.serial_number


class OCSPSigner(Protocol):
    """Turns a statement into a DER-encoded, signed OCSP response."""

    def sign(self, statement: OCSPStatement) -> bytes:
        ...


class BuiltinOCSPSigner:
    """Builds and signs the OCSP response in-process with `cryptography`."""

    def __init__(self, material: CAMaterial, validity_days: int = DEFAULT_RESPONSE_VALIDITY_DAYS):
        self.material = material
        self.validity_days = validity_days

    def sign(self, statement: OCSPStatement) -> bytes:
        issuer = self.material.issuing_cert
        # CertID uses SHA-1, as every OCSP client expects
        name_digest = hashes.Hash(hashes.SHA1())
        name_digest.update(issuer.subject.public_bytes())
        issuer_name_hash = name_digest.finalize()
        issuer_key_hash = x509.SubjectKeyIdentifier.from_public_key(issuer.public_key()).digest

        revocation_time = None
        revocation_reason = None
        if statement.status == OCSPStatus.REVOKED:
            revocation_time = statement.snapshot.revocation_time or statement.produced_at
            revocation_reason = x509.ReasonFlags.unspecified

        try:
            response = (
                ocsp.OCSPResponseBuilder()
                .add_response_by_hash(
                    issuer_name_hash=issuer_name_hash,
                    issuer_key_hash=issuer_key_hash,
                    serial_number=statement.serial,
                    algorithm=hashes.SHA1(),
                    cert_status=_CERT_STATUS[statement.status],
                    this_update=statement.produced_at,
                    next_update=statement.produced_at + timedelta(days=self.validity_days),
                    revocation_time=revocation_time,
                    revocation_reason=revocation_reason,
                )
                .responder_id(ocsp.OCSPResponderEncoding.HASH, issuer)
                .certificates([issuer])
                .sign(self.material.issuing_key, hashes.SHA256())
            )
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to build OCSP response: {e}", exc_info=True)
            raise OCSPGenerationError(f"OCSP response generation failed: {e}") from e

        return response.public_bytes(serialization.Encoding.DER)


class OpenSSLOCSPSigner:
    """Runs `openssl ocsp` against a one-line index file."""

    def __init__(
        self,
        ca_dir: Path,
        openssl_path: str = "openssl",
        timeout: float = 5.0,
        validity_days: int = DEFAULT_RESPONSE_VALIDITY_DAYS,
        key_passphrase: str | None = None,
    ):
        self.ca_dir = Path(ca_dir)
        self.openssl_path = openssl_path
        self.timeout = timeout
        self.validity_days = validity_days
        self._key_passphrase = key_passphrase or None

    def build_command(self, serial_hex: str, workdir: Path) -> list[str]:
        """Command line producing `<workdir>/<serial>.response.der`."""
        issuer = str(self.ca_dir / ISSUING_CA_FILE)
        command = [
            self.openssl_path, "ocsp",
            "-issuer", issuer,
            "-sha1",
            "-ndays", str(self.validity_days),
            "-no_nonce",
            "-serial", f"0x{serial_hex}",
            "-CA", issuer,
            "-rsigner", issuer,
            "-rkey", str(self.ca_dir / ISSUING_KEY_FILE),
            "-index", str(workdir / "index.txt"),
            "-no_cert_verify",
            "-respout", str(workdir / f"{serial_hex}.response.der"),
        ]
        if self._key_passphrase:
            command.extend(["-passin", "env:SILVERBULLET_CA_KEY_PASSPHRASE"])
        return command

    def sign(self, statement: OCSPStatement) -> bytes:
        serial_hex = serial_to_hex(statement.serial)

        with tempfile.TemporaryDirectory(prefix="silverbullet_ocsp_") as tmp:
            workdir = Path(tmp)
            (workdir / "index.txt").write_text(statement.index_line)
            # index.txt.attr carries nothing of interest but must exist
            (workdir / "index.txt.attr").write_text("unique_subject = yes\n")

            command = self.build_command(serial_hex, workdir)
            logger.debug(f"Calling openssl ocsp: {' '.join(command)}")

            env = dict(os.environ)
            if self._key_passphrase:
                env["SILVERBULLET_CA_KEY_PASSPHRASE"] = self._key_passphrase

            try:
                result = subprocess.run(
                    command,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    env=env,
                )
            except subprocess.TimeoutExpired as e:
                raise OCSPGenerationError(f"openssl ocsp timed out after {self.timeout}s") from e
            except OSError as e:
                raise OCSPGenerationError(f"Unable to run {self.openssl_path}: {e}") from e

            if result.returncode != 0:
                logger.error(f"openssl ocsp failed ({result.returncode}): {result.stderr.strip()}")
                raise OCSPGenerationError(f"Non-zero return value from openssl ocsp: {result.returncode}")

            try:
                return (workdir / f"{serial_hex}.response.der").read_bytes()
            except OSError as e:
                raise OCSPGenerationError(f"openssl ocsp produced no response: {e}") from e


def get_ocsp_signer(
    signer_type: OCSPSignerType,
    ca: CASigner,
    openssl_path: str = "openssl",
    timeout: float = 5.0,
    validity_days: int = DEFAULT_RESPONSE_VALIDITY_DAYS,
) -> OCSPSigner:
    """Pick the OCSP signer for a CA backend.

    Raises:
        ExternalCANotImplementedError: For CAs other than the embedded one
    """
    if not isinstance(ca, EmbeddedCA):
        raise ExternalCANotImplementedError("External CA OCSP statements are not implemented yet")
    if signer_type == OCSPSignerType.OPENSSL:
        return OpenSSLOCSPSigner(
            ca.ca_dir,
            openssl_path=openssl_path,
            timeout=timeout,
            validity_days=validity_days,
            key_passphrase=ca.key_passphrase,
        )
    return BuiltinOCSPSigner(ca.material, validity_days=validity_days)


def trigger_new_statement(
    store: IdentityStore,
    serial: int,
    signer: OCSPSigner,
    organization: str,
    now: datetime | None = None,
) -> bytes:
    """Produce, store and return a fresh OCSP response for `serial`.

    A statement is regenerated even for expired certificates.

    Raises:
        CertificateNotFoundError: If the serial is unknown
        OCSPGenerationError: If signing fails
    """
    now = now or datetime.now(timezone.utc)
    logger.info(f"Triggering new OCSP statement for serial {serial}")

    snapshot = store.query_certificate_status(serial)
    status = compute_status(snapshot, now)
    index_line = build_index_line(snapshot, status, organization, now)
    logger.debug(f"index.txt contents-to-be: {index_line.rstrip()}")

    der = signer.sign(OCSPStatement(
        snapshot=snapshot,
        status=status,
        index_line=index_line,
        produced_at=now,
    ))

    store.store_ocsp_response(serial, der, now)
    return der


def cached_status_matches(cached: bytes, status: OCSPStatus) -> bool:
    """True if a stored DER response asserts the given status."""
    try:
        response = ocsp.load_der_ocsp_response(cached)
        return (
            response.response_status == ocsp.OCSPResponseStatus.SUCCESSFUL
            and response.certificate_status == _CERT_STATUS[status]
        )
    except ValueError as e:
        logger.warning(f"Discarding unreadable cached OCSP response: {e}")
        return False


def current_statement(
    store: IdentityStore,
    serial: int,
    signer: OCSPSigner,
    organization: str,
    max_age: timedelta,
    now: datetime | None = None,
) -> bytes:
    """Return the cached statement, regenerating it when missing or older than `max_age`.

    The cache is also bypassed when the stored response no longer matches the
    status derived from the certificate row, e.g. after a revocation whose
    statement could not be signed, or once the certificate has expired.
    """
    now = now or datetime.now(timezone.utc)
    snapshot = store.query_certificate_status(serial)
    status = compute_status(snapshot, now)
    if (
        snapshot.cached_ocsp
        and snapshot.ocsp_timestamp is not None
        and now - snapshot.ocsp_timestamp < max_age
        and cached_status_matches(snapshot.cached_ocsp, status)
    ):
        return snapshot.cached_ocsp
    return trigger_new_statement(store, serial, signer, organization, now)
