"""
Certificate file store.

Writes certificate sets to disk. New material is staged in a scratch
directory next to the active files and only then moved into place, so a
failed or rejected update never touches the active set.
"""

import asyncio
import logging
import os
import shutil
import uuid
from datetime import date
from pathlib import Path

from certkeeper.config import settings
from certkeeper.core.cert_validator import PEM_CERT_MARKER, MalformedPemError
from certkeeper.models.certificate import CertificateMaterial, CertPaths

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


def check_pem_structure(material: CertificateMaterial) -> None:
    """
    Check that fetched material looks like PEM certificate and key data.

    Raises:
        MalformedPemError: A required PEM marker is missing
    """
    if PEM_CERT_MARKER not in material.cert_pem or "-----END CERTIFICATE-----" not in material.cert_pem:
        raise MalformedPemError(
            "Certificate is not in PEM format",
            suggestion="Certificate must contain BEGIN/END CERTIFICATE markers",
        )
    if "PRIVATE KEY-----" not in material.key_pem:
        raise MalformedPemError(
            "Private key is not in PEM format",
            suggestion="Private key must contain BEGIN/END PRIVATE KEY markers",
        )
    if material.ca_pem and PEM_CERT_MARKER not in material.ca_pem:
        raise MalformedPemError("CA certificate is not in PEM format")


def _staged_file(staging_dir: Path, target: Path) -> Path:
    return staging_dir / target.name


def _write_set(paths: CertPaths, staging_dir: Path, material: CertificateMaterial) -> None:
    staging_dir.mkdir(parents=True)

    key_path = _staged_file(staging_dir, paths.key_file)
    key_path.write_text(material.key_pem, encoding="utf-8")
    # Restrict permissions on private key
    key_path.chmod(0o600)

    cert_path = _staged_file(staging_dir, paths.cert_file)
    cert_path.write_text(material.cert_pem, encoding="utf-8")
    cert_path.chmod(0o644)

    if material.ca_pem:
        ca_path = _staged_file(staging_dir, paths.ca_file)
        ca_path.write_text(material.ca_pem, encoding="utf-8")
        ca_path.chmod(0o644)


async def stage_certificate_set(paths: CertPaths, material: CertificateMaterial) -> Path:
    """
    Write a certificate set into a fresh staging directory.

    Args:
        paths: Locations of the active set
        material: PEM material to stage

    Returns:
        Staging directory holding files named like the active set

    Raises:
        MalformedPemError: Material fails the PEM structure check
    """
    check_pem_structure(material)

    paths.certs_dir.mkdir(parents=True, exist_ok=True)
    staging_dir = paths.certs_dir / f"{STAGING_PREFIX}{uuid.uuid4().hex}"

    try:
        await asyncio.to_thread(_write_set, paths, staging_dir, material)
    except OSError:
        discard_staged_set(staging_dir)
        raise

    logger.debug(f"Staged certificate set in {staging_dir}")
    return staging_dir


def staged_paths(paths: CertPaths, staging_dir: Path) -> CertPaths:
    """CertPaths pointing at the files inside a staging directory."""
    return CertPaths(
        certs_dir=staging_dir,
        cert_file=_staged_file(staging_dir, paths.cert_file),
        key_file=_staged_file(staging_dir, paths.key_file),
        ca_file=_staged_file(staging_dir, paths.ca_file),
    )


def backup_active_set(paths: CertPaths, today: date | None = None) -> Path | None:
    """
    Copy the active certificate set to backup/<YYYY-MM-DD>/.

    A later backup on the same day overwrites the earlier one.

    Returns:
        Backup directory, or None when there was nothing to back up
    """
    existing = [p for p in (paths.cert_file, paths.key_file, paths.ca_file) if p.exists()]
    if not existing:
        return None

    backup_dir = paths.backup_dir / (today or date.today()).isoformat()
    backup_dir.mkdir(parents=True, exist_ok=True)

    for source in existing:
        shutil.copy2(source, backup_dir / source.name)

    logger.info(f"Backed up current certificate set to {backup_dir}")
    return backup_dir


def _commit(paths: CertPaths, staging_dir: Path) -> None:
    if settings.keep_certificate_backups:
        backup_active_set(paths)

    # Key first, then certificate
    for target in (paths.key_file, paths.cert_file):
        os.replace(_staged_file(staging_dir, target), target)

    staged_ca = _staged_file(staging_dir, paths.ca_file)
    if staged_ca.exists():
        os.replace(staged_ca, paths.ca_file)
    elif paths.ca_file.exists():
        # A CA left over from the previous set would not match the new one
        paths.ca_file.unlink()

    staging_dir.rmdir()


async def commit_staged_set(paths: CertPaths, staging_dir: Path) -> None:
    """
    Replace the active certificate set with a staged one.

    Each file is moved with os.replace, which is atomic on the same
    filesystem. The staging directory is removed afterwards.
    """
    try:
        await asyncio.to_thread(_commit, paths, staging_dir)
    except OSError:
        discard_staged_set(staging_dir)
        raise
    logger.info(f"Installed new certificate set in {paths.certs_dir}")


def discard_staged_set(staging_dir: Path) -> None:
    """Remove a staging directory and everything in it."""
    if staging_dir.exists():
        shutil.rmtree(staging_dir, ignore_errors=True)
        logger.debug(f"Discarded staged certificate set {staging_dir}")


async def install_certificate_set(paths: CertPaths, material: CertificateMaterial) -> None:
    """Stage and commit a certificate set in one step."""
    staging_dir = await stage_certificate_set(paths, material)
    await commit_staged_set(paths, staging_dir)
