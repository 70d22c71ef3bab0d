"""
Certificate service.

Single entry point for certificate operations requested by callers:
inspecting the active certificate, on-demand checks, manual uploads and
periodic monitoring. Failures are returned as result objects.
"""

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from certkeeper.config import settings
from certkeeper.core.cert_store import commit_staged_set, discard_staged_set, stage_certificate_set, staged_paths
from certkeeper.core.cert_validator import (
    CertificateError,
    InvalidCertificateError,
    KeyCertMismatchError,
    MalformedPemError,
    evaluate_certificate,
    invalid_reason,
    validate_certificate,
    verify_key_pair,
)
from certkeeper.core.paths import get_cert_paths
from certkeeper.core.renewal_scheduler import RenewalScheduler
from certkeeper.core.secret_backends import BackendUnavailableError, get_certificate_source, load_certificates
from certkeeper.core.status_recorder import StatusRecorder, get_status_recorder
from certkeeper.core.transport import SecureTransportManager, get_transport_manager
from certkeeper.models.certificate import (
    CertificateInfo,
    CertificateMaterial,
    CertificateUploadRequest,
    KeyPairCheck,
    MonitoringResult,
    SecretProvider,
    TlsStatus,
    UploadResult,
)

logger = logging.getLogger(__name__)


def _error_code(error: CertificateError) -> str:
    """snake_case error code from an exception class name."""
    name = type(error).__name__.removesuffix("Error")
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name).lstrip("_")


class CertificateService:
    """Facade over validation, loading, transport reload and status."""

    def __init__(
        self,
        recorder: StatusRecorder | None = None,
        transport: SecureTransportManager | None = None,
    ):
        self.recorder = recorder or get_status_recorder()
        self.transport = transport or get_transport_manager()
        # Serializes uploads with scheduled checks
        self.lock = asyncio.Lock()
        self.scheduler = RenewalScheduler(lock=self.lock, recorder=self.recorder, transport=self.transport)

    async def get_info(self) -> CertificateInfo:
        """Snapshot of the active certificate."""
        info = await evaluate_certificate(get_cert_paths().cert_file)
        self.recorder.update_certificate_info(info)
        return info

    def get_status(self) -> TlsStatus:
        return self.recorder.get_status()

    def get_source_label(self, source: str | None = None) -> str:
        return get_certificate_source(source)

    async def check_and_update(self, auto_update: bool = False, source: str | None = None) -> CertificateInfo:
        """Run one certificate check, renewing from source when allowed."""
        try:
            return await self.scheduler.check(auto_update=auto_update, source=source)
        except Exception as e:
            logger.exception(f"Certificate check failed: {e}")
            self.recorder.record_error(str(e))
            return CertificateInfo.missing(error=str(e))

    async def upload_manual(self, cert_pem: str, key_pem: str, ca_pem: str | None = None) -> UploadResult:
        """
        Validate and install a manually provided certificate set.

        The active files are replaced only after the new certificate parses,
        is inside its validity window and its key has been checked against it.

        Args:
            cert_pem: PEM certificate (chain allowed)
            key_pem: PEM private key
            ca_pem: Optional PEM CA certificate

        Returns:
            UploadResult with the new certificate info or the failure reason
        """
        try:
            request = CertificateUploadRequest(certificate_pem=cert_pem, private_key_pem=key_pem, ca_pem=ca_pem)
        except ValidationError as e:
            message = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
            logger.warning(f"Rejected certificate upload: {message}")
            return UploadResult(success=False, error=message, error_code="malformed_pem")

        material = CertificateMaterial(
            cert_pem=request.certificate_pem,
            key_pem=request.private_key_pem,
            ca_pem=request.ca_pem,
        )

        async with self.lock:
            try:
                return await self._install_upload(material)
            except CertificateError as e:
                logger.warning(f"Rejected certificate upload: {e.message}")
                return UploadResult(
                    success=False, error=e.message, error_code=_error_code(e), suggestion=e.suggestion
                )
            except OSError as e:
                logger.error(f"Failed to store uploaded certificate: {e}")
                return UploadResult(success=False, error=f"Failed to store certificate: {e}", error_code="storage_error")

    async def _install_upload(self, material: CertificateMaterial) -> UploadResult:
        paths = get_cert_paths()
        staging_dir = await stage_certificate_set(paths, material)
        committed = False

        try:
            staged = staged_paths(paths, staging_dir)
            info = await validate_certificate(staged.cert_file)
            if info.error:
                raise MalformedPemError(info.error)

            if not info.valid:
                raise InvalidCertificateError(
                    invalid_reason(info),
                    suggestion="Upload a certificate that is currently valid and has a Common Name or Organization",
                )

            warnings: list[dict[str, Any]] = []
            check = await verify_key_pair(staged.cert_file, staged.key_file)
            if check == KeyPairCheck.MISMATCH:
                raise KeyCertMismatchError(
                    "Private key does not match certificate",
                    suggestion="Upload the private key that was used to request this certificate",
                )
            if check in (KeyPairCheck.TIMED_OUT, KeyPairCheck.UNVERIFIED):
                message = f"Certificate/key correspondence could not be verified ({check.value})"
                if settings.require_key_verification:
                    return UploadResult(
                        success=False,
                        error=message,
                        error_code=f"verification_{check.value}",
                        suggestion="Make openssl available or set REQUIRE_KEY_VERIFICATION=false",
                    )
                warnings.append({"code": f"verification_{check.value}", "message": message})

            await commit_staged_set(paths, staging_dir)
            committed = True
        finally:
            if not committed:
                discard_staged_set(staging_dir)

        await asyncio.to_thread(self.transport.reload)

        info = await evaluate_certificate(paths.cert_file)
        self.recorder.update_certificate_info(info)
        logger.info(f"Uploaded certificate for {info.domain} is now active")

        return UploadResult(success=True, certificate_info=info, warnings=warnings)

    async def start_monitoring(
        self,
        interval_ms: int | None = None,
        auto_update: bool = False,
        source: str | None = None,
    ) -> MonitoringResult:
        """Start or restart periodic certificate checks."""
        interval_seconds = max(1, interval_ms // 1000) if interval_ms else None
        try:
            next_run = await self.scheduler.start(interval_seconds, auto_update=auto_update, source=source)
        except Exception as e:
            logger.exception(f"Failed to start certificate monitoring: {e}")
            return MonitoringResult(success=False, error=str(e))

        return MonitoringResult(success=True, interval_seconds=self.scheduler.interval_seconds, next_run=next_run)

    async def stop_monitoring(self) -> MonitoringResult:
        """Stop periodic certificate checks."""
        if not await self.scheduler.stop():
            return MonitoringResult(success=False, error="Certificate monitoring is not running")
        return MonitoringResult(success=True)

    async def ensure_certificates(self) -> CertificateInfo:
        """
        Make sure a certificate set is in place at startup.

        Loads from SECRET_PROVIDER; when that fails and no usable
        certificate exists, generates a self-signed one. With
        SECRET_PROVIDER=none an existing valid certificate is kept.
        """
        paths = get_cert_paths()
        provider = settings.secret_provider.lower()

        async with self.lock:
            current = await evaluate_certificate(paths.cert_file)
            try:
                if provider == SecretProvider.NONE.value and current.valid:
                    logger.info(f"Keeping existing certificate for {current.domain}")
                else:
                    await load_certificates(provider, paths=paths)
            except BackendUnavailableError as e:
                logger.error(f"Failed to load certificates: {e.message}")
                self.recorder.record_error(e.message)

                if not current.valid and provider != SecretProvider.NONE.value:
                    logger.warning("Falling back to a self-signed certificate")
                    try:
                        await load_certificates(SecretProvider.NONE, paths=paths)
                    except CertificateError as fallback_error:
                        logger.error(f"Self-signed fallback failed: {fallback_error.message}")

            await asyncio.to_thread(self.transport.reload)

        return await self.get_info()


# Singleton instance
_cert_service: CertificateService | None = None


def get_cert_service() -> CertificateService:
    """Get the global certificate service instance."""
    global _cert_service
    if _cert_service is None:
        _cert_service = CertificateService()
    return _cert_service
