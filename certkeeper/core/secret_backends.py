"""
Secret backend loader.

Fetches the certificate, private key and CA from the configured secret
provider and installs them as the active certificate set. Each provider
is a fetch function in FETCHERS; blocking SDK calls run in worker threads.
"""

import asyncio
import ipaddress
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

import boto3
import httpx
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from botocore.exceptions import BotoCoreError, ClientError
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from certkeeper.config import settings
from certkeeper.core.cert_store import install_certificate_set
from certkeeper.core.cert_validator import CertificateError
from certkeeper.core.paths import get_cert_paths
from certkeeper.models.certificate import CertificateMaterial, CertPaths, SecretProvider

logger = logging.getLogger(__name__)

SOURCE_LABELS = {
    SecretProvider.AZURE: "Azure Key Vault",
    SecretProvider.AWS: "AWS Secrets Manager",
    SecretProvider.VAULT: "HashiCorp Vault",
    SecretProvider.LOCAL: "Local files",
    SecretProvider.LETSENCRYPT: "Let's Encrypt",
    SecretProvider.NONE: "Self-signed (development)",
}


class BackendUnavailableError(CertificateError):
    """A secret backend is misconfigured or could not be reached."""

    def __init__(self, message: str, provider: SecretProvider | str = None, suggestion: str = None):
        self.provider = provider
        super().__init__(message, suggestion=suggestion)


def resolve_source(source: str | None) -> tuple[SecretProvider, dict]:
    """
    Interpret an update source.

    A provider name selects that backend; any other non-empty string is
    treated as a directory holding cert.pem/key.pem/ca.pem. None selects
    SECRET_PROVIDER.

    Returns:
        Tuple of (provider, context) for load_certificates
    """
    if not source:
        source = settings.secret_provider
    try:
        return SecretProvider(source.lower()), {}
    except ValueError:
        return SecretProvider.LOCAL, {"path": source}


def get_certificate_source(kind: SecretProvider | str | None = None) -> str:
    """Human-readable label of a certificate source."""
    provider, context = resolve_source(kind)
    if context.get("path"):
        return f"Local files ({context['path']})"
    return SOURCE_LABELS[provider]


# Fetchers

async def _fetch_azure(context: dict) -> CertificateMaterial:
    if not settings.keyvault_name:
        raise BackendUnavailableError(
            "KEYVAULT_NAME environment variable is required for Azure Key Vault",
            provider=SecretProvider.AZURE,
            suggestion="Set KEYVAULT_NAME to the name of the key vault",
        )

    vault_url = f"https://{settings.keyvault_name}.vault.azure.net"

    def fetch() -> CertificateMaterial:
        client = SecretClient(vault_url=vault_url, credential=DefaultAzureCredential())
        cert = client.get_secret(settings.azure_cert_secret_name).value
        key = client.get_secret(settings.azure_key_secret_name).value
        try:
            ca = client.get_secret(settings.azure_ca_secret_name).value
        except ResourceNotFoundError:
            ca = None
        return CertificateMaterial(cert_pem=cert, key_pem=key, ca_pem=ca)

    try:
        return await asyncio.to_thread(fetch)
    except AzureError as e:
        raise BackendUnavailableError(
            f"Failed to load from Azure Key Vault: {e}",
            provider=SecretProvider.AZURE,
            suggestion="Check the vault name, secret names and Azure credentials",
        )


async def _fetch_aws(context: dict) -> CertificateMaterial:
    if not settings.aws_region:
        raise BackendUnavailableError(
            "AWS_REGION environment variable is required for AWS Secrets Manager",
            provider=SecretProvider.AWS,
            suggestion="Set AWS_REGION, e.g. us-east-1",
        )

    def fetch() -> CertificateMaterial:
        client = boto3.client("secretsmanager", region_name=settings.aws_region)
        cert = client.get_secret_value(SecretId=settings.aws_cert_secret_id)["SecretString"]
        key = client.get_secret_value(SecretId=settings.aws_key_secret_id)["SecretString"]
        try:
            ca = client.get_secret_value(SecretId=settings.aws_ca_secret_id)["SecretString"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise
            ca = None
        return CertificateMaterial(cert_pem=cert, key_pem=key, ca_pem=ca)

    try:
        return await asyncio.to_thread(fetch)
    except (BotoCoreError, ClientError, KeyError) as e:
        raise BackendUnavailableError(
            f"Failed to load from AWS Secrets Manager: {e}",
            provider=SecretProvider.AWS,
            suggestion="Check the secret ids, region and AWS credentials",
        )


async def _fetch_vault(context: dict) -> CertificateMaterial:
    if not settings.vault_addr or not settings.vault_token:
        raise BackendUnavailableError(
            "VAULT_ADDR and VAULT_TOKEN environment variables are required for HashiCorp Vault",
            provider=SecretProvider.VAULT,
        )

    url = f"{settings.vault_addr.rstrip('/')}/v1/{settings.vault_mount}/data/{settings.vault_secret_path}"

    try:
        async with httpx.AsyncClient(timeout=settings.vault_timeout) as client:
            response = await client.get(url, headers={"X-Vault-Token": settings.vault_token})
            response.raise_for_status()
            data = response.json()["data"]["data"]
    except httpx.HTTPError as e:
        raise BackendUnavailableError(
            f"Failed to load from HashiCorp Vault: {e}",
            provider=SecretProvider.VAULT,
            suggestion="Check VAULT_ADDR, VAULT_TOKEN and the secret path",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise BackendUnavailableError(
            f"Unexpected response from HashiCorp Vault: {e}",
            provider=SecretProvider.VAULT,
        )

    if not data.get("cert") or not data.get("key"):
        raise BackendUnavailableError(
            f"Vault secret {settings.vault_mount}/{settings.vault_secret_path} has no cert or key field",
            provider=SecretProvider.VAULT,
        )

    return CertificateMaterial(cert_pem=data["cert"], key_pem=data["key"], ca_pem=data.get("ca"))


def _read_files(provider: SecretProvider, cert_file: Path, key_file: Path, ca_file: Path) -> CertificateMaterial:
    if not cert_file.exists() or not key_file.exists():
        raise BackendUnavailableError(
            f"Certificate files not found: {cert_file}, {key_file}",
            provider=provider,
        )
    try:
        return CertificateMaterial(
            cert_pem=cert_file.read_text(encoding="utf-8"),
            key_pem=key_file.read_text(encoding="utf-8"),
            ca_pem=ca_file.read_text(encoding="utf-8") if ca_file.exists() else None,
        )
    except (OSError, UnicodeDecodeError) as e:
        raise BackendUnavailableError(f"Cannot read certificate files: {e}", provider=provider)


async def _fetch_local(context: dict) -> CertificateMaterial:
    directory = context.get("path") or settings.local_cert_path
    if not directory:
        raise BackendUnavailableError(
            "LOCAL_CERT_PATH environment variable is required for local certificates",
            provider=SecretProvider.LOCAL,
        )

    source = Path(directory)
    return await asyncio.to_thread(
        _read_files, SecretProvider.LOCAL, source / "cert.pem", source / "key.pem", source / "ca.pem"
    )


async def _fetch_letsencrypt(context: dict) -> CertificateMaterial:
    live_dir = Path(settings.letsencrypt_dir) / "live" / settings.domain_name
    return await asyncio.to_thread(
        _read_files,
        SecretProvider.LETSENCRYPT,
        live_dir / "fullchain.pem",
        live_dir / "privkey.pem",
        live_dir / "chain.pem",
    )


def generate_self_signed(
    domain: str,
    organization: str | None = None,
    validity_days: int | None = None,
) -> CertificateMaterial:
    """
    Generate a self-signed RSA-2048 certificate for development use.

    The certificate covers the domain, its wildcard and the loopback
    names. It doubles as its own CA.
    """
    organization = organization or settings.self_signed_organization
    validity_days = validity_days or settings.self_signed_validity_days

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, domain),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    alt_names = [
        x509.DNSName(domain),
        x509.DNSName(f"*.{domain}"),
        x509.DNSName("localhost"),
        x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        x509.IPAddress(ipaddress.ip_address("::1")),
    ]

    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(private_key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")

    return CertificateMaterial(cert_pem=cert_pem, key_pem=key_pem, ca_pem=cert_pem)


async def _fetch_self_signed(context: dict) -> CertificateMaterial:
    domain = context.get("domain") or settings.domain_name
    logger.warning(f"Generating self-signed certificate for {domain} (development only)")
    return await asyncio.to_thread(generate_self_signed, domain)


FETCHERS: dict[SecretProvider, Callable[[dict], Awaitable[CertificateMaterial]]] = {
    SecretProvider.AZURE: _fetch_azure,
    SecretProvider.AWS: _fetch_aws,
    SecretProvider.VAULT: _fetch_vault,
    SecretProvider.LOCAL: _fetch_local,
    SecretProvider.LETSENCRYPT: _fetch_letsencrypt,
    SecretProvider.NONE: _fetch_self_signed,
}


async def load_certificates(
    kind: SecretProvider | str | None = None,
    context: dict | None = None,
    paths: CertPaths | None = None,
) -> bool:
    """
    Fetch certificates from a secret backend and install them.

    The previous set is backed up and replaced only after the new
    material has been fetched and staged.

    Args:
        kind: Provider or update source (default SECRET_PROVIDER)
        context: Provider-specific overrides, e.g. {"path": "/certs"} for local
        paths: Target locations (default from settings)

    Returns:
        True once the new set is active

    Raises:
        BackendUnavailableError: Backend misconfigured, unreachable or returned bad data
    """
    if isinstance(kind, SecretProvider):
        provider, resolved_context = kind, {}
    else:
        provider, resolved_context = resolve_source(kind)
    resolved_context.update(context or {})

    paths = paths or get_cert_paths()
    logger.info(f"Loading certificates from {get_certificate_source(provider)}")

    material = await FETCHERS[provider](resolved_context)

    try:
        await install_certificate_set(paths, material)
    except CertificateError as e:
        raise BackendUnavailableError(
            f"{SOURCE_LABELS[provider]} returned unusable certificate data: {e.message}",
            provider=provider,
            suggestion=e.suggestion,
        )
    except OSError as e:
        raise BackendUnavailableError(f"Cannot write certificates to {paths.certs_dir}: {e}", provider=provider)

    logger.info(f"Certificates loaded from {SOURCE_LABELS[provider]}")
    return True
