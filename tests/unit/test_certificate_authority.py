"""
Unit tests for the CA backends.

Tests validity computation, leaf certificate contents, CA material loading
and the fail-fast behaviour of the external CA.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID

from silverbullet.core.certificate_authority import (
    ISSUING_KEY_FILE,
    ROOT_CA_FILE,
    EmbeddedCA,
    ExternalCA,
    compute_validity_days,
    get_ca_signer,
    load_ca_material,
)
from silverbullet.core.csr_generator import CSRGenerator, generate_private_key
from silverbullet.core.errors import CASigningError, ExpiredUserError, ExternalCANotImplementedError
from silverbullet.core.profile import CABackend
from tests.utils.certificate_helpers import is_signed_by


@pytest.mark.unit
class TestValidityDays:
    """Test certificate lifetime derived from the user expiry."""

    def test_whole_days_get_one_extra(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert compute_validity_days(now + timedelta(days=30), now) == 31

    def test_partial_days_round_up(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert compute_validity_days(now + timedelta(days=2, hours=1), now) == 4

    def test_expiring_right_now(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert compute_validity_days(now, now) == 1

    def test_naive_expiry_is_utc(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert compute_validity_days(datetime(2030, 1, 11), now) == 11

    def test_expired_user(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ExpiredUserError):
            compute_validity_days(now - timedelta(seconds=1), now)


@pytest.mark.unit
@pytest.mark.certificate
class TestEmbeddedCA:
    """Test signing with the embedded CA."""

    def test_material_loaded(self, ca_dir, ca_material):
        material = load_ca_material(ca_dir)

        assert material.issuing_cert == ca_material[1].issuing_cert
        assert material.issuing_cert.issuer == material.root_cert.subject
        assert is_signed_by(material.issuing_cert, material.root_cert)
        assert "BEGIN CERTIFICATE" in material.root_pem

    def test_missing_material(self, tmp_path):
        with pytest.raises(CASigningError):
            load_ca_material(tmp_path)

    def test_key_file_permissions(self, ca_dir):
        assert (ca_dir / ISSUING_KEY_FILE).stat().st_mode & 0o777 == 0o600

    def test_sign_client_certificate(self, ca_dir, store, profile):
        ca = EmbeddedCA(ca_dir, store)
        csr = CSRGenerator(store, "eduroam").generate(generate_private_key(2048), profile).csr

        before = datetime.now(timezone.utc)
        signed = ca.sign(csr, 31)
        cert = signed.certificate

        assert cert.serial_number == signed.serial
        assert signed.serial >= 1_000_000_000
        assert cert.subject == csr.subject
        assert cert.issuer == ca.material.issuing_cert.subject
        assert isinstance(cert.signature_hash_algorithm, hashes.SHA256)
        assert is_signed_by(cert, ca.material.issuing_cert)

        lifetime = signed.expiry - before
        assert timedelta(days=31) - timedelta(minutes=1) < lifetime < timedelta(days=31, minutes=1)

        basic_constraints = cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS)
        assert basic_constraints.value.ca is False
        assert basic_constraints.critical
        eku = cert.extensions.get_extension_for_oid(ExtensionOID.EXTENDED_KEY_USAGE).value
        assert list(eku) == [ExtendedKeyUsageOID.CLIENT_AUTH]

        root = x509.load_pem_x509_certificate(signed.root_pem.encode())
        assert root.fingerprint(hashes.SHA256()) == (
            x509.load_pem_x509_certificate((ca_dir / ROOT_CA_FILE).read_bytes()).fingerprint(hashes.SHA256())
        )

    def test_encrypted_key_requires_passphrase(self, tmp_path, ca_dir, store, ca_material):
        material = ca_material[1]
        for name in ("rootca.pem", "real.pem"):
            (tmp_path / name).write_bytes((ca_dir / name).read_bytes())
        (tmp_path / ISSUING_KEY_FILE).write_bytes(
            material.issuing_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.BestAvailableEncryption(b"s3cret"),
            )
        )

        assert EmbeddedCA(tmp_path, store, "s3cret").material.issuing_key.key_size == 2048
        with pytest.raises(CASigningError):
            EmbeddedCA(tmp_path, store).material


@pytest.mark.unit
class TestExternalCA:
    """Test that the external CA fails fast."""

    def test_every_operation_not_implemented(self):
        ca = ExternalCA("https://ca.example.org/")

        with pytest.raises(ExternalCANotImplementedError):
            ca.sign(None, 10)
        with pytest.raises(NotImplementedError):
            ca.revoke(1)
        with pytest.raises(ExternalCANotImplementedError):
            ca.ocsp_statement(1)

    def test_backend_selection(self, ca_dir, store):
        assert isinstance(get_ca_signer(CABackend.EMBEDDED, store, ca_dir), EmbeddedCA)
        external = get_ca_signer(CABackend.EXTERNAL, store, ca_dir, external_url="https://ca.example.org")
        assert isinstance(external, ExternalCA)
        assert external.backend == CABackend.EXTERNAL
