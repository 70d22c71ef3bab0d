"""
Certificate validation.

Parses PEM certificates, extracts identity and validity details, and
classifies them as valid or not. Certificates whose public key algorithm
the cryptography backend cannot load are inspected with the openssl CLI
instead, at reduced confidence (no serial number, no SAN list).

Also verifies that a certificate and a private key belong together.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from certkeeper.config import settings
from certkeeper.models.certificate import CertificateInfo, KeyPairCheck

logger = logging.getLogger(__name__)

PEM_CERT_MARKER = "-----BEGIN CERTIFICATE-----"

# Date format printed by `openssl x509 -dates`
OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


class CertificateError(Exception):
    """Base exception for certificate operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class MalformedPemError(CertificateError):
    """Input lacks the required PEM structure."""

    pass


class CertificateParseError(CertificateError):
    """Certificate is PEM-framed but cannot be interpreted."""

    pass


class UnsupportedKeyAlgorithmError(CertificateError):
    """Public key algorithm is not supported by the primary parser."""

    pass


class InvalidCertificateError(CertificateError):
    """Certificate parses but cannot be used (expired, not yet valid or unidentifiable)."""

    pass


class KeyCertMismatchError(CertificateError):
    """Private key does not correspond to the certificate."""

    pass


class VerificationTimeoutError(CertificateError):
    """An external verification call exceeded its time bound."""

    pass


class OpenSSLError(CertificateError):
    """The openssl CLI is unavailable or exited with an error."""

    pass


async def run_openssl(args: list[str], timeout: float | None = None) -> str:
    """
    Run the openssl CLI and return its standard output.

    Args:
        args: Arguments passed after the openssl binary
        timeout: Seconds before the process is killed (default from settings)

    Raises:
        OpenSSLError: Binary missing or non-zero exit
        VerificationTimeoutError: Call exceeded the timeout
    """
    timeout = timeout if timeout is not None else settings.openssl_timeout

    try:
        process = await asyncio.create_subprocess_exec(
            settings.openssl_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise OpenSSLError(
            f"Cannot run {settings.openssl_binary}: {e}",
            suggestion="Install OpenSSL or point OPENSSL_BINARY at it",
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise VerificationTimeoutError(f"openssl {args[0]} timed out after {timeout:g}s")

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise OpenSSLError(f"openssl {args[0]} exited with code {process.returncode}: {detail}")

    return stdout.decode("utf-8", errors="replace")


def _first_value(name: x509.Name, oid) -> str | None:
    attrs = name.get_attributes_for_oid(oid)
    if attrs:
        return str(attrs[0].value)
    return None


def describe_public_key(public_key) -> str:
    """Short algorithm label for a public key, e.g. RSA-2048 or EC-secp256r1."""
    if isinstance(public_key, rsa.RSAPublicKey):
        return f"RSA-{public_key.key_size}"
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return f"EC-{public_key.curve.name}"
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "Ed25519"
    if isinstance(public_key, ed448.Ed448PublicKey):
        return "Ed448"
    if isinstance(public_key, dsa.DSAPublicKey):
        return f"DSA-{public_key.key_size}"
    return type(public_key).__name__


def parse_certificate_pem(cert_pem: bytes) -> dict:
    """
    Parse a PEM certificate and extract details.

    Args:
        cert_pem: PEM-encoded certificate

    Returns:
        Dictionary with subject/issuer names, validity window (UTC),
        serial number, SANs and key algorithm

    Raises:
        UnsupportedKeyAlgorithmError: Public key cannot be loaded
        CertificateParseError: Certificate structure is unusable
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateParseError(
            f"Invalid certificate: {e}",
            suggestion="Ensure the certificate is a valid X.509 PEM file",
        )

    try:
        public_key = cert.public_key()
    except (UnsupportedAlgorithm, ValueError) as e:
        raise UnsupportedKeyAlgorithmError(f"Unsupported public key algorithm: {e}")

    try:
        # Extract SANs
        alt_names = None
        try:
            san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
            alt_names = san_ext.value.get_values_for_type(x509.DNSName)
            alt_names += [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
        except x509.ExtensionNotFound:
            pass

        return {
            "subject_cn": _first_value(cert.subject, NameOID.COMMON_NAME),
            "subject_o": _first_value(cert.subject, NameOID.ORGANIZATION_NAME),
            "issuer_cn": _first_value(cert.issuer, NameOID.COMMON_NAME),
            "issuer_o": _first_value(cert.issuer, NameOID.ORGANIZATION_NAME),
            "not_before": cert.not_valid_before_utc,
            "not_after": cert.not_valid_after_utc,
            "serial_number": format(cert.serial_number, "x"),
            "alt_names": alt_names,
            "key_algorithm": describe_public_key(public_key),
        }
    except ValueError as e:
        raise CertificateParseError(f"Malformed certificate field: {e}")


def _split_openssl_name(value: str) -> dict[str, str]:
    """Split an openssl-printed distinguished name into attributes."""
    value = value.strip()
    if value.startswith("/"):
        # Legacy format: /C=US/O=Example Co/CN=example.com
        parts = value.strip("/").split("/")
    else:
        # RFC 2253-like format: CN = example.com, O = Example Co
        parts = re.split(r"(?<!\\),", value)

    attrs: dict[str, str] = {}
    for part in parts:
        if "=" not in part:
            continue
        key, _, val = part.partition("=")
        key = key.strip().upper()
        if key not in attrs:
            attrs[key] = val.strip().replace("\\,", ",")
    return attrs


def _parse_openssl_date(value: str) -> datetime:
    normalized = " ".join(value.split())
    return datetime.strptime(normalized, OPENSSL_DATE_FORMAT).replace(tzinfo=timezone.utc)


def parse_openssl_text(output: str) -> dict:
    """
    Parse `openssl x509 -noout -subject -issuer -dates` output.

    Returns the same keys as parse_certificate_pem; serial number, SANs and
    key algorithm are always None.
    """
    fields = {}
    for line in output.splitlines():
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key.strip().lower()] = value

    subject = _split_openssl_name(fields.get("subject", ""))
    issuer = _split_openssl_name(fields.get("issuer", ""))

    try:
        not_before = _parse_openssl_date(fields["notbefore"]) if "notbefore" in fields else None
        not_after = _parse_openssl_date(fields["notafter"]) if "notafter" in fields else None
    except ValueError as e:
        raise CertificateParseError(f"Cannot parse validity dates from openssl output: {e}")

    return {
        "subject_cn": subject.get("CN"),
        "subject_o": subject.get("O"),
        "issuer_cn": issuer.get("CN"),
        "issuer_o": issuer.get("O"),
        "not_before": not_before,
        "not_after": not_after,
        "serial_number": None,
        "alt_names": None,
        "key_algorithm": None,
    }


async def inspect_with_openssl(cert_path: Path) -> dict:
    """
    Extract certificate details with the openssl CLI.

    Raises:
        UnsupportedKeyAlgorithmError: openssl is unavailable or its output is unusable
    """
    try:
        output = await run_openssl(["x509", "-in", str(cert_path), "-noout", "-subject", "-issuer", "-dates"])
        fields = parse_openssl_text(output)
    except CertificateError as e:
        raise UnsupportedKeyAlgorithmError(
            f"Unsupported key algorithm and certificate inspection failed: {e.message}",
            suggestion="Install OpenSSL, or use a certificate with an RSA or EC key",
        )

    if fields["not_after"] is None:
        raise UnsupportedKeyAlgorithmError("Certificate inspection returned no validity dates")
    return fields


def build_certificate_info(fields: dict, now: datetime | None = None, alternative: bool = False) -> CertificateInfo:
    """
    Turn parsed certificate fields into a CertificateInfo.

    The domain is the subject CN, falling back to the Organization. A
    certificate with neither is never valid.
    """
    now = now or datetime.now(timezone.utc)

    domain = fields.get("subject_cn")
    if not domain and fields.get("subject_o"):
        domain = fields["subject_o"]
        logger.info(f"Certificate has no Common Name, using Organization '{domain}' as its domain")
    if not domain:
        logger.warning("Certificate subject has neither a Common Name nor an Organization")

    not_before = fields.get("not_before")
    not_after = fields.get("not_after")

    # Expiry is strict: a certificate is still valid at exactly not_after
    is_expired = not_after is None or now > not_after
    is_not_yet_valid = not_before is not None and now < not_before

    return CertificateInfo(
        valid=not is_expired and not is_not_yet_valid and bool(domain),
        domain=domain or None,
        issuer=fields.get("issuer_cn") or fields.get("issuer_o"),
        not_before=not_before,
        not_after=not_after,
        serial_number=fields.get("serial_number"),
        subject_alt_names=fields.get("alt_names"),
        alternative_validation=alternative,
        key_algorithm=fields.get("key_algorithm"),
    )


async def validate_certificate(cert_path: str | Path, now: datetime | None = None) -> CertificateInfo:
    """
    Validate the certificate stored at cert_path.

    A missing file is expected before the first certificate is installed
    and yields an invalid result without logging an error.

    Args:
        cert_path: Path to a PEM certificate
        now: Reference time (defaults to the current UTC time)

    Returns:
        CertificateInfo describing the certificate

    Raises:
        CertificateParseError: Certificate cannot be interpreted
        UnsupportedKeyAlgorithmError: Key unsupported and openssl fallback failed
    """
    path = Path(cert_path)
    if not path.exists():
        logger.debug(f"No certificate at {path}")
        return CertificateInfo.missing()

    try:
        cert_data = await asyncio.to_thread(path.read_text, encoding="utf-8")
    except UnicodeDecodeError:
        logger.error(f"Certificate {path} is not UTF-8 text")
        return CertificateInfo.missing(error="Certificate file is not PEM text")

    if PEM_CERT_MARKER not in cert_data:
        logger.error(f"Certificate {path} has no PEM certificate marker")
        return CertificateInfo.missing(error="Certificate file is not in PEM format")

    try:
        fields = parse_certificate_pem(cert_data.encode("utf-8"))
        alternative = False
    except UnsupportedKeyAlgorithmError as e:
        logger.warning(f"{e.message}; falling back to openssl inspection for {path}")
        fields = await inspect_with_openssl(path)
        alternative = True

    return build_certificate_info(fields, now=now, alternative=alternative)


async def evaluate_certificate(cert_path: str | Path, now: datetime | None = None) -> CertificateInfo:
    """validate_certificate that reports hard failures in CertificateInfo.error instead of raising."""
    try:
        return await validate_certificate(cert_path, now=now)
    except CertificateError as e:
        logger.error(f"Certificate validation failed for {cert_path}: {e.message}")
        return CertificateInfo.missing(error=e.message)
    except OSError as e:
        logger.error(f"Cannot read certificate {cert_path}: {e}")
        return CertificateInfo.missing(error=f"Cannot read certificate: {e}")


def invalid_reason(info: CertificateInfo, now: datetime | None = None) -> str | None:
    """Why a parsed certificate is not valid, or None if it is."""
    if info.valid:
        return None
    if info.error:
        return info.error

    now = now or datetime.now(timezone.utc)
    if not info.domain:
        return "Certificate subject has neither a Common Name nor an Organization"
    if info.not_after is None or now > info.not_after:
        return f"Certificate expired on {info.not_after}"
    if info.not_before is not None and now < info.not_before:
        return f"Certificate is not valid before {info.not_before}"
    return "Certificate is not valid"


def is_expiring_soon(info: CertificateInfo, days_threshold: int = 30, now: datetime | None = None) -> bool:
    """Check if a valid certificate expires within the threshold."""
    if not info.valid or info.not_after is None:
        return False
    return info.days_until_expiry(now) <= days_threshold


def public_keys_match(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Raises:
        CertificateParseError: Certificate cannot be loaded
        MalformedPemError: Private key cannot be loaded or is encrypted
        UnsupportedKeyAlgorithmError: Either key uses an unsupported algorithm
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateParseError(f"Invalid certificate: {e}")

    try:
        cert_public = cert.public_key()
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except UnsupportedAlgorithm as e:
        raise UnsupportedKeyAlgorithmError(f"Unsupported key algorithm: {e}")
    except TypeError:
        raise MalformedPemError(
            "Private key is encrypted",
            suggestion="Upload an unencrypted private key",
        )
    except ValueError as e:
        raise MalformedPemError(
            f"Invalid private key: {e}",
            suggestion="Ensure the private key is in valid PEM format",
        )

    # Compare public key bytes
    cert_bytes = cert_public.public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return cert_bytes == key_bytes


async def verify_key_pair(cert_path: Path, key_path: Path, timeout: float | None = None) -> KeyPairCheck:
    """
    Check that the private key belongs to the certificate.

    Compares public keys in-process; key types the cryptography backend
    cannot load are compared with openssl, each call bounded by timeout.

    Args:
        cert_path: PEM certificate
        key_path: PEM private key
        timeout: Seconds per openssl call (default KEY_VERIFICATION_TIMEOUT)

    Returns:
        KeyPairCheck outcome

    Raises:
        MalformedPemError: Private key is unreadable
        CertificateParseError: Certificate is unreadable
    """
    timeout = timeout if timeout is not None else settings.key_verification_timeout

    cert_pem = await asyncio.to_thread(Path(cert_path).read_bytes)
    key_pem = await asyncio.to_thread(Path(key_path).read_bytes)

    try:
        if public_keys_match(cert_pem, key_pem):
            return KeyPairCheck.MATCH
        return KeyPairCheck.MISMATCH
    except UnsupportedKeyAlgorithmError as e:
        logger.info(f"{e.message}; comparing keys with openssl")

    try:
        cert_public = await run_openssl(["x509", "-in", str(cert_path), "-noout", "-pubkey"], timeout=timeout)
        key_public = await run_openssl(["pkey", "-in", str(key_path), "-pubout"], timeout=timeout)
    except VerificationTimeoutError as e:
        logger.warning(f"Certificate/key verification timed out: {e.message}")
        return KeyPairCheck.TIMED_OUT
    except OpenSSLError as e:
        logger.warning(f"Certificate/key verification unavailable: {e.message}")
        return KeyPairCheck.UNVERIFIED

    if cert_public.strip() == key_public.strip():
        return KeyPairCheck.MATCH
    return KeyPairCheck.MISMATCH
