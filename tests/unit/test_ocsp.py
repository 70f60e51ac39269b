"""
Unit tests for OCSP status derivation and response signing.
"""

import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.x509 import ocsp as x509_ocsp

from silverbullet.core import ocsp as ocsp_module
from silverbullet.core.certificate_authority import EmbeddedCA, ExternalCA
from silverbullet.core.errors import (
    CertificateNotFoundError,
    ExternalCANotImplementedError,
    OCSPGenerationError,
)
from silverbullet.core.identity_store import CertificateMeta, CertStatusSnapshot
from silverbullet.core.ocsp import (
    BuiltinOCSPSigner,
    OCSPStatement,
    OCSPStatus,
    OpenSSLOCSPSigner,
    build_index_line,
    compute_status,
    current_statement,
    get_ocsp_signer,
    serial_to_hex,
    trigger_new_statement,
)
from silverbullet.core.profile import OCSPSignerType
from silverbullet.db.models import RevocationStatus
from tests.utils.certificate_helpers import create_user_with_invitation, parse_ocsp, verify_ocsp_signature

SERIAL = 0xABCDEF123

NOW = datetime(2030, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _snapshot(revoked=False, expiry=NOW + timedelta(days=30), revocation_time=None):
    return CertStatusSnapshot(
        serial_number=SERIAL,
        cn="user@1-1.de.hosted.eduroam.org",
        profile_id=1,
        federation="DE",
        revocation_status=RevocationStatus.REVOKED if revoked else RevocationStatus.NOT_REVOKED,
        revocation_time=revocation_time,
        expiry=expiry,
        cached_ocsp=None,
        ocsp_timestamp=None,
    )


@pytest.fixture
def recorded_serial(store, profile):
    """A certificate row valid for 30 days."""
    user_id, invitation = create_user_with_invitation(store, profile)
    store.record_certificate(CertificateMeta(
        serial_number=SERIAL,
        cn="user@1-1.de.hosted.eduroam.org",
        profile_id=profile.profile_id,
        user_id=user_id,
        invitation_id=invitation.id,
        expiry=datetime.now(timezone.utc) + timedelta(days=30),
    ))
    return SERIAL


@pytest.fixture
def signer(ca_material):
    return BuiltinOCSPSigner(ca_material[1])


@pytest.mark.unit
@pytest.mark.ocsp
class TestStatusDerivation:
    """Test V/R/E derivation and index line rendering."""

    def test_valid(self):
        assert compute_status(_snapshot(), NOW) == OCSPStatus.VALID

    def test_revoked(self):
        assert compute_status(_snapshot(revoked=True), NOW) == OCSPStatus.REVOKED

    def test_expired_wins_over_revoked(self):
        snapshot = _snapshot(revoked=True, expiry=NOW - timedelta(seconds=1))
        assert compute_status(snapshot, NOW) == OCSPStatus.EXPIRED

    def test_serial_hex_even_length(self):
        assert serial_to_hex(0xABC) == "0ABC"
        assert serial_to_hex(0xABCD) == "ABCD"

    def test_index_line_valid(self):
        line = build_index_line(_snapshot(), OCSPStatus.VALID, "eduroam", NOW)

        assert line.endswith("\n")
        fields = line.rstrip("\n").split("\t")
        assert fields == [
            "V",
            "300701120000Z",
            "",
            "0ABCDEF123",
            "unknown",
            "/O=eduroam/OU=DE/CN=user@1-1.de.hosted.eduroam.org"
            "/emailAddress=user@1-1.de.hosted.eduroam.org",
        ]

    def test_index_line_revoked(self):
        revoked_at = datetime(2030, 5, 20, 8, 30, 0, tzinfo=timezone.utc)
        snapshot = _snapshot(revoked=True, revocation_time=revoked_at)

        fields = build_index_line(snapshot, OCSPStatus.REVOKED, "eduroam", NOW).split("\t")

        assert fields[0] == "R"
        assert fields[2] == "300520083000Z,unspecified"


@pytest.mark.unit
@pytest.mark.ocsp
class TestBuiltinSigner:
    """Test in-process OCSP responses."""

    def test_good_response(self, signer, ca_material):
        snapshot = _snapshot()
        der = signer.sign(OCSPStatement(snapshot, OCSPStatus.VALID, "", NOW))

        response = parse_ocsp(der)
        assert response.certificate_status == x509_ocsp.OCSPCertStatus.GOOD
        assert response.serial_number == SERIAL
        assert response.next_update_utc - response.this_update_utc == timedelta(days=10)
        verify_ocsp_signature(response, ca_material[1].issuing_cert)

    def test_revoked_response(self, signer):
        revoked_at = datetime(2030, 5, 20, 8, 30, 0, tzinfo=timezone.utc)
        snapshot = _snapshot(revoked=True, revocation_time=revoked_at)

        response = parse_ocsp(signer.sign(OCSPStatement(snapshot, OCSPStatus.REVOKED, "", NOW)))

        assert response.certificate_status == x509_ocsp.OCSPCertStatus.REVOKED
        assert response.revocation_time_utc == revoked_at
        assert response.revocation_reason == x509.ReasonFlags.unspecified

    def test_expired_response_is_unknown(self, signer):
        snapshot = _snapshot(expiry=NOW - timedelta(days=1))

        response = parse_ocsp(signer.sign(OCSPStatement(snapshot, OCSPStatus.EXPIRED, "", NOW)))

        assert response.certificate_status == x509_ocsp.OCSPCertStatus.UNKNOWN

    def test_issuer_hashes_match_request(self, signer, ca_material):
        issuer = ca_material[1].issuing_cert
        response = parse_ocsp(signer.sign(OCSPStatement(_snapshot(), OCSPStatus.VALID, "", NOW)))

        assert response.issuer_key_hash == x509.SubjectKeyIdentifier.from_public_key(issuer.public_key()).digest
        assert response.responder_key_hash == response.issuer_key_hash


@pytest.mark.unit
@pytest.mark.ocsp
class TestStatementLifecycle:
    """Test regenerating and caching statements from stored state."""

    def test_trigger_stores_response(self, store, recorded_serial, signer):
        der = trigger_new_statement(store, recorded_serial, signer, "eduroam")

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.GOOD
        assert store.query_certificate_status(recorded_serial).cached_ocsp == der

    def test_revoked_after_revocation(self, store, recorded_serial, signer):
        store.record_revocation(recorded_serial)

        der = trigger_new_statement(store, recorded_serial, signer, "eduroam")

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.REVOKED

    def test_expired_statement_regenerated(self, store, recorded_serial, signer):
        store.record_revocation(recorded_serial)
        later = datetime.now(timezone.utc) + timedelta(days=60)

        der = trigger_new_statement(store, recorded_serial, signer, "eduroam", now=later)

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.UNKNOWN
        snapshot = store.query_certificate_status(recorded_serial)
        assert snapshot.cached_ocsp == der
        assert snapshot.ocsp_timestamp == later

    def test_unknown_serial(self, store, signer):
        with pytest.raises(CertificateNotFoundError):
            trigger_new_statement(store, 123, signer, "eduroam")

    def test_current_statement_uses_cache(self, store, recorded_serial, signer):
        first = trigger_new_statement(store, recorded_serial, signer, "eduroam")

        cached = current_statement(store, recorded_serial, signer, "eduroam", timedelta(hours=1))
        assert cached == first

        fresh = current_statement(
            store, recorded_serial, signer, "eduroam", timedelta(hours=1),
            now=datetime.now(timezone.utc) + timedelta(hours=2),
        )
        assert fresh != first

    def test_cache_not_served_after_revocation(self, store, recorded_serial, signer):
        trigger_new_statement(store, recorded_serial, signer, "eduroam")
        store.record_revocation(recorded_serial)

        der = current_statement(store, recorded_serial, signer, "eduroam", timedelta(days=5))

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.REVOKED

    def test_cache_not_served_when_status_changed(self, store, recorded_serial, signer):
        good = trigger_new_statement(store, recorded_serial, signer, "eduroam")
        # Revocation recorded behind the cache's back
        certificate = store.get_certificate(recorded_serial)
        certificate.revocation_status = RevocationStatus.REVOKED.value
        store.db.commit()
        store.store_ocsp_response(recorded_serial, good)

        der = current_statement(store, recorded_serial, signer, "eduroam", timedelta(days=5))

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.REVOKED

    def test_cache_not_served_after_expiry(self, store, recorded_serial, signer):
        trigger_new_statement(store, recorded_serial, signer, "eduroam")
        expiry = store.query_certificate_status(recorded_serial).expiry

        der = current_statement(
            store, recorded_serial, signer, "eduroam", timedelta(days=60),
            now=expiry + timedelta(hours=1),
        )

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.UNKNOWN

    def test_unreadable_cache_is_replaced(self, store, recorded_serial, signer):
        store.store_ocsp_response(recorded_serial, b"garbage")

        der = current_statement(store, recorded_serial, signer, "eduroam", timedelta(days=5))

        assert parse_ocsp(der).certificate_status == x509_ocsp.OCSPCertStatus.GOOD
        assert store.query_certificate_status(recorded_serial).cached_ocsp == der

    def test_signer_failure_leaves_record_untouched(self, store, recorded_serial):
        class FailingSigner:
            def sign(self, statement):
                raise OCSPGenerationError("boom")

        with pytest.raises(OCSPGenerationError):
            trigger_new_statement(store, recorded_serial, FailingSigner(), "eduroam")

        snapshot = store.query_certificate_status(recorded_serial)
        assert snapshot.revocation_status == RevocationStatus.NOT_REVOKED
        assert snapshot.cached_ocsp is None


@pytest.mark.unit
@pytest.mark.ocsp
class TestOpenSSLSigner:
    """Test the openssl subprocess signer."""

    def test_command_line(self, ca_dir):
        signer = OpenSSLOCSPSigner(ca_dir, openssl_path="/usr/bin/openssl")
        command = signer.build_command("0ABC", Path("/tmp/work"))

        assert command[:2] == ["/usr/bin/openssl", "ocsp"]
        assert command[command.index("-serial") + 1] == "0x0ABC"
        assert command[command.index("-ndays") + 1] == "10"
        assert command[command.index("-rkey") + 1] == str(ca_dir / "real.key")
        assert command[command.index("-respout") + 1] == "/tmp/work/0ABC.response.der"
        assert "-no_nonce" in command
        assert "-passin" not in command

    def test_passphrase_passed_through_environment(self, ca_dir):
        command = OpenSSLOCSPSigner(ca_dir, key_passphrase="pw").build_command("01", Path("/tmp"))
        assert command[-2:] == ["-passin", "env:SILVERBULLET_CA_KEY_PASSPHRASE"]
        assert "pw" not in command

    def test_timeout(self, ca_dir, monkeypatch):
        def fake_run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])

        monkeypatch.setattr(ocsp_module.subprocess, "run", fake_run)
        signer = OpenSSLOCSPSigner(ca_dir, timeout=0.5)

        with pytest.raises(OCSPGenerationError, match="timed out"):
            signer.sign(OCSPStatement(_snapshot(), OCSPStatus.VALID, "V\n", NOW))

    def test_non_zero_exit(self, ca_dir, monkeypatch):
        def fake_run(command, **kwargs):
            return subprocess.CompletedProcess(command, 1, stdout="", stderr="bad things")

        monkeypatch.setattr(ocsp_module.subprocess, "run", fake_run)

        with pytest.raises(OCSPGenerationError):
            OpenSSLOCSPSigner(ca_dir).sign(OCSPStatement(_snapshot(), OCSPStatus.VALID, "V\n", NOW))

    def test_missing_binary(self, ca_dir):
        signer = OpenSSLOCSPSigner(ca_dir, openssl_path="/nonexistent/openssl")

        with pytest.raises(OCSPGenerationError):
            signer.sign(OCSPStatement(_snapshot(), OCSPStatus.VALID, "V\n", NOW))

    @pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl binary not available")
    def test_real_openssl_revoked(self, store, recorded_serial, ca_dir):
        store.record_revocation(recorded_serial)
        signer = OpenSSLOCSPSigner(ca_dir, openssl_path=shutil.which("openssl"), timeout=30)

        der = trigger_new_statement(store, recorded_serial, signer, "eduroam")

        response = parse_ocsp(der)
        assert response.serial_number == recorded_serial
        assert response.certificate_status == x509_ocsp.OCSPCertStatus.REVOKED


@pytest.mark.unit
class TestSignerSelection:
    """Test choosing the OCSP signer."""

    def test_builtin(self, ca_dir, store):
        signer = get_ocsp_signer(OCSPSignerType.BUILTIN, EmbeddedCA(ca_dir, store))
        assert isinstance(signer, BuiltinOCSPSigner)

    def test_openssl(self, ca_dir, store):
        signer = get_ocsp_signer(OCSPSignerType.OPENSSL, EmbeddedCA(ca_dir, store), timeout=2.0)
        assert isinstance(signer, OpenSSLOCSPSigner)
        assert signer.timeout == 2.0

    def test_external_ca(self):
        with pytest.raises(ExternalCANotImplementedError):
            get_ocsp_signer(OCSPSignerType.BUILTIN, ExternalCA("https://ca.example.org"))
