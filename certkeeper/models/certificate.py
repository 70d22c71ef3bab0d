"""
Certificate models for the TLS certificate lifecycle.

Provides Pydantic models for parsed certificate snapshots, resolved file
locations, transport configuration, status bookkeeping and the results
returned to callers of the certificate service.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


# Public CAs whose certificates are considered production-ready
PRODUCTION_CAS = [
    "Let's Encrypt",
    "DigiCert",
    "GlobalSign",
    "Comodo",
    "Sectigo",
    "GeoTrust",
    "Symantec",
    "Thawte",
]

# PKCS#8, PKCS#1 and the other traditional headers (RSA, EC, DSA, ...)
PRIVATE_KEY_HEADER = re.compile(r"^-----BEGIN [A-Z ]*PRIVATE KEY-----")


class SecretProvider(str, Enum):
    """Where the active certificate set comes from."""
    AZURE = "azure"               # Azure Key Vault
    AWS = "aws"                   # AWS Secrets Manager
    VAULT = "vault"               # HashiCorp Vault KV engine
    LOCAL = "local"               # Local directory
    LETSENCRYPT = "letsencrypt"   # Output of an external ACME client
    NONE = "none"                 # Locally generated self-signed pair


class CertificateClassification(str, Enum):
    """Trust level of the active certificate."""
    MISSING = "missing"
    INVALID = "invalid"
    SELF_SIGNED = "self_signed"
    UNTRUSTED = "untrusted"       # Valid, but not from a known public CA
    PRODUCTION = "production"


class KeyPairCheck(str, Enum):
    """Outcome of a certificate/private key correspondence check."""
    MATCH = "match"
    MISMATCH = "mismatch"
    TIMED_OUT = "timed_out"
    UNVERIFIED = "unverified"     # No tool could compare the keys


class SchedulerState(str, Enum):
    """Renewal scheduler state."""
    IDLE = "idle"
    CHECKING = "checking"


class CertificateInfo(BaseModel):
    """
    Read-only snapshot of a parsed certificate.

    Created fresh by every validation and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    valid: bool = Field(default=False, description="Parsed, inside its validity window and identifiable")
    domain: Optional[str] = Field(None, description="Subject CN, or Organization when CN is absent")
    issuer: Optional[str] = Field(None, description="Issuer CN, or Organization when CN is absent")
    not_before: Optional[datetime] = Field(None, description="Certificate valid from (UTC)")
    not_after: Optional[datetime] = Field(None, description="Certificate valid until (UTC)")
    serial_number: Optional[str] = Field(None, description="Serial number (hex)")
    subject_alt_names: Optional[List[str]] = Field(None, description="Subject Alternative Names")
    alternative_validation: bool = Field(
        default=False,
        description="Derived from certificate-inspection tool output instead of a full parse",
    )
    key_algorithm: Optional[str] = Field(None, description="Public key algorithm, e.g. RSA-2048")
    error: Optional[str] = Field(None, description="Why the certificate could not be evaluated")

    @property
    def expiration(self) -> Optional[datetime]:
        """Alias for not_after."""
        return self.not_after

    @property
    def is_self_signed(self) -> bool:
        return self.domain is not None and self.issuer == self.domain

    def days_until_expiry(self, now: Optional[datetime] = None) -> Optional[int]:
        """Whole days left until not_after (negative once expired)."""
        if self.not_after is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days

    @classmethod
    def missing(cls, error: Optional[str] = None) -> "CertificateInfo":
        """Snapshot for an absent or unusable certificate."""
        return cls(valid=False, error=error)


def classify_certificate(info: Optional[CertificateInfo]) -> CertificateClassification:
    """
    Classify a certificate by how far it can be trusted.

    Self-signed certificates are valid for transport but never production-ready.
    """
    if info is None:
        return CertificateClassification.MISSING
    if info.error:
        # Present but unreadable
        return CertificateClassification.INVALID
    if info.not_after is None and info.domain is None:
        return CertificateClassification.MISSING
    if not info.valid:
        return CertificateClassification.INVALID
    if info.is_self_signed:
        return CertificateClassification.SELF_SIGNED

    issuer = (info.issuer or "").lower()
    if any(ca.lower() in issuer for ca in PRODUCTION_CAS):
        return CertificateClassification.PRODUCTION
    return CertificateClassification.UNTRUSTED


def is_production_ready(info: Optional[CertificateInfo]) -> bool:
    """Check whether the certificate is valid and issued by a public CA."""
    return classify_certificate(info) == CertificateClassification.PRODUCTION


class CertPaths(BaseModel):
    """On-disk locations of the active certificate set."""
    model_config = ConfigDict(frozen=True)

    certs_dir: Path
    cert_file: Path
    key_file: Path
    ca_file: Path

    @property
    def status_file(self) -> Path:
        return self.certs_dir / "tls-status.json"

    @property
    def backup_dir(self) -> Path:
        return self.certs_dir / "backup"


class TlsConfig(BaseModel):
    """Resolved file-system facts used to build the secure transport."""

    cert_path: Optional[Path] = None
    key_path: Optional[Path] = None
    ca_path: Optional[Path] = None
    is_valid: bool = False
    use_default: bool = True


class ConnectionCounters(BaseModel):
    """Connection outcome counters for the process lifetime."""

    successful: int = 0
    failed: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.successful + self.failed


class TlsStatus(BaseModel):
    """Connection and certificate status of the secure transport."""

    last_connection: Optional[datetime] = None
    last_error: Optional[str] = None
    certificate_info: CertificateInfo = Field(default_factory=CertificateInfo)
    connections: ConnectionCounters = Field(default_factory=ConnectionCounters)


class CertificateMaterial(BaseModel):
    """Raw PEM material fetched from a secret backend."""

    cert_pem: str
    key_pem: str
    ca_pem: Optional[str] = None


# Request / result models

class CertificateUploadRequest(BaseModel):
    """Manually uploaded certificate, private key and optional CA."""

    certificate_pem: str = Field(..., description="PEM-encoded certificate (including chain if applicable)")
    private_key_pem: str = Field(..., description="PEM-encoded private key")
    ca_pem: Optional[str] = Field(None, description="PEM-encoded CA certificate (optional)")

    @field_validator("certificate_pem")
    @classmethod
    def validate_certificate_pem(cls, v: str) -> str:
        """Validate certificate PEM markers."""
        v = v.strip()
        if "-----BEGIN CERTIFICATE-----" not in v:
            raise ValueError("Certificate must be in PEM format (missing BEGIN CERTIFICATE marker)")
        if "-----END CERTIFICATE-----" not in v:
            raise ValueError("Invalid certificate PEM format (missing END CERTIFICATE marker)")
        return v + "\n"

    @field_validator("private_key_pem")
    @classmethod
    def validate_private_key_pem(cls, v: str) -> str:
        """Validate private key PEM markers."""
        v = v.strip()
        if not PRIVATE_KEY_HEADER.match(v):
            raise ValueError("Private key must be in PEM format")
        if not v.endswith("PRIVATE KEY-----"):
            raise ValueError("Invalid private key PEM format (missing END marker)")
        return v + "\n"

    @field_validator("ca_pem")
    @classmethod
    def validate_ca_pem(cls, v: Optional[str]) -> Optional[str]:
        """Validate the optional CA certificate."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if "-----BEGIN CERTIFICATE-----" not in v:
            raise ValueError("CA certificate must be in PEM format")
        return v + "\n"


class CheckRequest(BaseModel):
    """Request for an on-demand certificate check."""

    auto_update: bool = Field(default=False, description="Replace the certificate if it is expiring")
    source: Optional[str] = Field(
        None,
        description="Update source: a provider name (azure, aws, vault, local, letsencrypt, none) or a directory",
    )


class MonitoringRequest(BaseModel):
    """Request to start periodic certificate monitoring."""

    interval_ms: Optional[int] = Field(None, gt=0, description="Check interval in milliseconds (default 24h)")
    auto_update: bool = Field(default=False, description="Replace expiring certificates automatically")
    source: Optional[str] = Field(None, description="Update source used when auto_update is enabled")


class UploadResult(BaseModel):
    """Outcome of a manual certificate upload."""

    success: bool = Field(..., description="Whether the new certificate set is active")
    error: Optional[str] = Field(None, description="Human-readable failure reason")
    error_code: Optional[str] = Field(None, description="Machine-readable failure category")
    suggestion: Optional[str] = Field(None, description="How to fix the failure")
    certificate_info: Optional[CertificateInfo] = None
    warnings: List[Dict[str, Any]] = Field(default_factory=list, description="Non-blocking warnings")


class MonitoringResult(BaseModel):
    """Outcome of starting or stopping certificate monitoring."""

    success: bool
    error: Optional[str] = None
    interval_seconds: Optional[int] = None
    next_run: Optional[datetime] = None


class CertificateInfoResponse(BaseModel):
    """Active certificate with its trust classification."""

    certificate_info: CertificateInfo
    classification: CertificateClassification
    production_ready: bool = False
    days_until_expiry: Optional[int] = None
    source: str = Field(..., description="Where certificates are loaded from")

    @classmethod
    def from_info(cls, info: CertificateInfo, source: str) -> "CertificateInfoResponse":
        classification = classify_certificate(info)
        return cls(
            certificate_info=info,
            classification=classification,
            production_ready=classification == CertificateClassification.PRODUCTION,
            days_until_expiry=info.days_until_expiry(),
            source=source,
        )
