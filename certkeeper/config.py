"""
Configuration utilities and settings management.

Handles environment variables, runtime mode, and the settings that drive
certificate sourcing, validation and renewal.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Runtime
    app_env: Literal["development", "production"] = Field(
        default="production", alias="APP_ENV", description="Runtime mode (selects the certificate directory)"
    )
    user_data_dir: str = Field(
        default=str(Path.home() / ".certkeeper"),
        alias="USER_DATA_DIR",
        description="Platform user-data directory used in production mode",
    )
    api_base_url: str = Field(
        default="https://api.example.com",
        alias="API_BASE_URL",
        description="Base URL of the upstream API secured by the client certificate",
    )

    # HTTP surface
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8443, alias="API_PORT")

    # Certificate source
    secret_provider: str = Field(
        default="none",
        alias="SECRET_PROVIDER",
        description="Certificate source: azure, aws, vault, local, letsencrypt or none",
    )
    domain_name: str = Field(default="localhost", alias="DOMAIN_NAME")
    acme_email: str = Field(default="", alias="ACME_EMAIL", description="Contact email of the ACME account")
    local_cert_path: str | None = Field(
        default=None, alias="LOCAL_CERT_PATH", description="Directory holding cert.pem/key.pem/ca.pem"
    )
    letsencrypt_dir: str = Field(default="/etc/letsencrypt", alias="LETSENCRYPT_DIR")

    # Azure Key Vault
    keyvault_name: str | None = Field(default=None, alias="KEYVAULT_NAME")
    azure_cert_secret_name: str = Field(default="tls-cert", alias="AZURE_CERT_SECRET_NAME")
    azure_key_secret_name: str = Field(default="tls-key", alias="AZURE_KEY_SECRET_NAME")
    azure_ca_secret_name: str = Field(default="tls-ca", alias="AZURE_CA_SECRET_NAME")

    # AWS Secrets Manager
    aws_region: str | None = Field(default=None, alias="AWS_REGION")
    aws_cert_secret_id: str = Field(default="prod/tls/cert", alias="AWS_CERT_SECRET_ID")
    aws_key_secret_id: str = Field(default="prod/tls/key", alias="AWS_KEY_SECRET_ID")
    aws_ca_secret_id: str = Field(default="prod/tls/ca", alias="AWS_CA_SECRET_ID")

    # HashiCorp Vault (KV v2)
    vault_addr: str | None = Field(default=None, alias="VAULT_ADDR")
    vault_token: str | None = Field(default=None, alias="VAULT_TOKEN")
    vault_mount: str = Field(default="secret", alias="VAULT_MOUNT")
    vault_secret_path: str = Field(default="tls", alias="VAULT_SECRET_PATH")
    vault_timeout: float = Field(default=10.0, alias="VAULT_TIMEOUT", description="Vault HTTP timeout in seconds")

    # Renewal
    cert_renewal_days: int = Field(
        default=30, alias="CERT_RENEWAL_DAYS", description="Days before expiry to trigger automatic renewal"
    )
    cert_check_interval_hours: float = Field(
        default=24, alias="CERT_CHECK_INTERVAL_HOURS", description="Hours between scheduled certificate checks"
    )
    auto_update_certificates: bool = Field(
        default=False,
        alias="AUTO_UPDATE_CERTIFICATES",
        description="Allow the scheduler to replace expiring certificates from SECRET_PROVIDER",
    )

    # Verification
    key_verification_timeout: float = Field(
        default=5.0, alias="KEY_VERIFICATION_TIMEOUT", description="Timeout in seconds for cert/key cross-checks"
    )
    require_key_verification: bool = Field(
        default=False,
        alias="REQUIRE_KEY_VERIFICATION",
        description="Reject uploads whose cert/key correspondence could not be verified",
    )
    openssl_binary: str = Field(default="openssl", alias="OPENSSL_BINARY")
    openssl_timeout: float = Field(
        default=10.0, alias="OPENSSL_TIMEOUT", description="Timeout in seconds for certificate inspection"
    )

    # Self-signed fallback
    self_signed_validity_days: int = Field(default=365, alias="SELF_SIGNED_VALIDITY_DAYS")
    self_signed_organization: str = Field(default="certkeeper Development", alias="SELF_SIGNED_ORGANIZATION")

    # Storage
    keep_certificate_backups: bool = Field(
        default=True, alias="KEEP_CERTIFICATE_BACKUPS", description="Copy the active set aside before replacing it"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def is_development_mode() -> bool:
    """Check if we're running in development mode."""
    return settings.app_env == "development"


def get_check_interval_seconds() -> int:
    """Scheduled check interval in whole seconds."""
    return max(1, int(settings.cert_check_interval_hours * 3600))
