"""
Certificate path resolution.

Computes where the active certificate set lives. The result depends only
on the runtime mode and the given directories, so the validator, the
loader and the transport always agree on file locations.
"""

from pathlib import Path

from certkeeper.config import settings
from certkeeper.models.certificate import CertPaths

CERTS_DIR_NAME = "certs"


def resolve_cert_paths(mode: str, user_data_dir: str | Path, cwd: str | Path) -> CertPaths:
    """
    Resolve certificate locations for a runtime mode.

    Args:
        mode: "development" or "production"
        user_data_dir: Platform user-data directory (used in production)
        cwd: Working directory (used in development)

    Returns:
        CertPaths for the active certificate set
    """
    base = Path(cwd) if mode == "development" else Path(user_data_dir)
    certs_dir = base / CERTS_DIR_NAME

    return CertPaths(
        certs_dir=certs_dir,
        cert_file=certs_dir / "cert.pem",
        key_file=certs_dir / "key.pem",
        ca_file=certs_dir / "ca.pem",
    )


def get_cert_paths() -> CertPaths:
    """Resolve certificate locations from the current settings."""
    return resolve_cert_paths(settings.app_env, settings.user_data_dir, Path.cwd())
