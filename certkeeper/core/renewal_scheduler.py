"""
Certificate renewal scheduler.

Periodically validates the active certificate and, when it is expiring
or unusable and auto-update is enabled, replaces it from the configured
secret backend using APScheduler.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from certkeeper.config import get_check_interval_seconds, settings
from certkeeper.core.cert_validator import CertificateError, evaluate_certificate
from certkeeper.core.paths import get_cert_paths
from certkeeper.core.secret_backends import BackendUnavailableError, load_certificates, resolve_source
from certkeeper.core.status_recorder import StatusRecorder, get_status_recorder
from certkeeper.core.transport import SecureTransportManager, get_transport_manager
from certkeeper.models.certificate import CertificateInfo, CertPaths, SchedulerState, SecretProvider

logger = logging.getLogger(__name__)

JOB_ID = "cert_check"


class RenewalScheduler:
    """
    Expiry-driven certificate renewal.

    A check that is still running when the next tick fires causes that
    tick to be skipped. Checks share an asyncio.Lock with manual uploads.
    """

    def __init__(
        self,
        lock: asyncio.Lock | None = None,
        recorder: StatusRecorder | None = None,
        transport: SecureTransportManager | None = None,
        paths_factory: Callable[[], CertPaths] = get_cert_paths,
    ):
        self.lock = lock or asyncio.Lock()
        self.recorder = recorder or get_status_recorder()
        self.transport = transport or get_transport_manager()
        self.paths_factory = paths_factory
        self.scheduler: AsyncIOScheduler | None = None
        self.state = SchedulerState.IDLE
        self.auto_update = False
        self.source: str | None = None
        self.interval_seconds: int | None = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    async def start(self, interval_seconds: int | None = None, auto_update: bool = False, source: str | None = None) -> datetime | None:
        """
        Start periodic checks, replacing any running schedule.

        The first check runs immediately.

        Returns:
            Next scheduled run time
        """
        self.interval_seconds = interval_seconds or get_check_interval_seconds()
        self.auto_update = auto_update
        self.source = source

        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

        job = self.scheduler.add_job(
            self._scheduled_check,
            IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Certificate Check",
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )

        if not self.scheduler.running:
            self.scheduler.start()

        logger.info(
            f"Certificate monitoring started: every {self.interval_seconds}s, "
            f"auto_update={auto_update}, source={source or settings.secret_provider}"
        )
        return job.next_run_time

    async def stop(self) -> bool:
        """Stop periodic checks. Returns False if monitoring was not running."""
        if not self.running:
            return False
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Certificate monitoring stopped")
        return True

    async def _scheduled_check(self) -> None:
        if self.state == SchedulerState.CHECKING:
            logger.info("Previous certificate check still running, skipping this one")
            return

        try:
            await self.check(auto_update=self.auto_update, source=self.source)
        except Exception as e:
            logger.exception(f"Error in scheduled certificate check: {e}")

    async def check(self, auto_update: bool = False, source: str | None = None) -> CertificateInfo:
        """
        Validate the active certificate and renew it if needed.

        Args:
            auto_update: Replace an expiring or unusable certificate
            source: Update source (default SECRET_PROVIDER)

        Returns:
            Snapshot of the certificate that is active afterwards
        """
        self.state = SchedulerState.CHECKING
        try:
            async with self.lock:
                return await self._check(auto_update, source)
        finally:
            self.state = SchedulerState.IDLE

    async def _check(self, auto_update: bool, source: str | None) -> CertificateInfo:
        paths = self.paths_factory()
        info = await evaluate_certificate(paths.cert_file)
        self.recorder.update_certificate_info(info)

        days_left = info.days_until_expiry()
        if info.valid and days_left > settings.cert_renewal_days:
            logger.info(f"Certificate for {info.domain} does not need renewal ({days_left} days left)")
            return info

        if info.valid:
            logger.warning(f"Certificate for {info.domain} expires in {days_left} days")
        else:
            logger.warning(f"No valid certificate in {paths.certs_dir}")

        if not auto_update:
            logger.info("Automatic certificate update is disabled")
            return info

        if not source and settings.secret_provider.lower() == SecretProvider.NONE.value:
            if info.valid:
                logger.warning("No certificate update source configured, keeping the current certificate")
                return info
            logger.warning("No certificate update source configured, generating a self-signed certificate")
            source = SecretProvider.NONE

        try:
            await load_certificates(source, paths=paths)
        except BackendUnavailableError as e:
            logger.error(f"Certificate update failed: {e.message}")
            self.recorder.record_error(e.message)

            provider, _ = resolve_source(source)
            if info.valid or provider == SecretProvider.NONE:
                return info

            logger.warning("No usable certificate available, falling back to a self-signed certificate")
            try:
                await load_certificates(SecretProvider.NONE, paths=paths)
            except CertificateError as fallback_error:
                logger.error(f"Self-signed fallback failed: {fallback_error.message}")
                return info

        await asyncio.to_thread(self.transport.reload)

        info = await evaluate_certificate(paths.cert_file)
        self.recorder.update_certificate_info(info)
        logger.info(f"Active certificate: {info.domain}, valid={info.valid}, expires {info.not_after}")
        return info
