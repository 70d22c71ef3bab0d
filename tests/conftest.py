"""
Global test fixtures.

Points every certificate path at a per-test temporary directory and
provides factories for real certificates and keys.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, rsa
from cryptography.x509.oid import NameOID

from certkeeper.config import settings
from certkeeper.core.paths import get_cert_paths
from certkeeper.core.status_recorder import StatusRecorder


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep certificate files inside tmp_path and reset behavior flags."""
    monkeypatch.setattr(settings, "app_env", "production")
    monkeypatch.setattr(settings, "user_data_dir", str(tmp_path / "userdata"))
    monkeypatch.setattr(settings, "secret_provider", "none")
    monkeypatch.setattr(settings, "domain_name", "test.example.com")
    monkeypatch.setattr(settings, "local_cert_path", None)
    monkeypatch.setattr(settings, "letsencrypt_dir", str(tmp_path / "letsencrypt"))
    monkeypatch.setattr(settings, "keep_certificate_backups", True)
    monkeypatch.setattr(settings, "require_key_verification", False)
    monkeypatch.setattr(settings, "cert_renewal_days", 30)
    return settings


@pytest.fixture(scope="session")
def rsa_key():
    """Shared RSA-2048 private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    """A second RSA key that matches no certificate built from rsa_key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def dsa_key():
    return dsa.generate_private_key(key_size=2048)


def _key_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def cert_factory(rsa_key):
    """
    Build PEM certificates.

    Returns a function (cert_pem, key_pem) = build(...) with keyword
    arguments for subject, issuer, validity window, SANs and key.
    """

    def build(
        common_name: str | None = "test.example.com",
        organization: str | None = "Test Org",
        issuer_cn: str | None = None,
        issuer_org: str | None = None,
        not_before: datetime | None = None,
        not_after: datetime | None = None,
        days_valid: int = 365,
        alt_names: list[str] | None = None,
        key=None,
    ) -> tuple[str, str]:
        key = key or rsa_key
        now = datetime.now(timezone.utc)

        subject_attrs = []
        if common_name:
            subject_attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
        if organization:
            subject_attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
        subject = x509.Name(subject_attrs)

        if issuer_cn or issuer_org:
            issuer_attrs = []
            if issuer_cn:
                issuer_attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn))
            if issuer_org:
                issuer_attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_org))
            issuer = x509.Name(issuer_attrs)
        else:
            issuer = subject

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - timedelta(days=1))
            .not_valid_after(not_after or now + timedelta(days=days_valid))
        )
        if alt_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in alt_names]),
                critical=False,
            )

        cert = builder.sign(key, hashes.SHA256())
        return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"), _key_pem(key)

    return build


@pytest.fixture
def key_pem_of():
    """Serialize a private key to PEM."""
    return _key_pem


@pytest.fixture
def cert_paths():
    """Active certificate locations for the isolated settings."""
    return get_cert_paths()


@pytest.fixture
def install_cert_set(cert_paths):
    """Write a certificate set directly into the active location."""

    def install(cert_pem: str, key_pem: str, ca_pem: str | None = None):
        cert_paths.certs_dir.mkdir(parents=True, exist_ok=True)
        cert_paths.cert_file.write_text(cert_pem)
        cert_paths.key_file.write_text(key_pem)
        if ca_pem:
            cert_paths.ca_file.write_text(ca_pem)
        return cert_paths

    return install


@pytest.fixture
def recorder(cert_paths):
    return StatusRecorder(paths=cert_paths)


@pytest.fixture
def mock_transport():
    """Transport manager stand-in that records reloads."""
    transport = MagicMock()
    transport.reload = MagicMock()
    return transport
