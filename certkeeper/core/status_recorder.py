"""
TLS status recorder.

Keeps connection counters, the last error and the current certificate
snapshot for the lifetime of the process, and mirrors them to
tls-status.json after every change.
"""

import logging
import threading
from datetime import datetime, timezone

from certkeeper.core.paths import get_cert_paths
from certkeeper.models.certificate import CertificateInfo, CertPaths, TlsStatus

logger = logging.getLogger(__name__)


class StatusRecorder:
    """Thread-safe holder of the process-wide TlsStatus."""

    def __init__(self, paths: CertPaths | None = None):
        self._paths = paths
        self._lock = threading.Lock()
        self._status = TlsStatus()

    @property
    def paths(self) -> CertPaths:
        return self._paths or get_cert_paths()

    def _persist(self) -> None:
        # Called with the lock held
        status_file = self.paths.status_file
        try:
            status_file.parent.mkdir(parents=True, exist_ok=True)
            status_file.write_text(self._status.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to save TLS status to {status_file}: {e}")

    def record_success(self) -> None:
        """Count a successful secure connection."""
        with self._lock:
            self._status.connections.successful += 1
            self._status.last_connection = datetime.now(timezone.utc)
            self._status.last_error = None
            self._persist()

    def record_failure(self, message: str) -> None:
        """Count a failed secure connection and keep its error message."""
        with self._lock:
            self._status.connections.failed += 1
            self._status.last_error = message
            self._persist()

    def record_error(self, message: str) -> None:
        """Keep an error message without counting a connection."""
        with self._lock:
            self._status.last_error = message
            self._persist()

    def update_certificate_info(self, info: CertificateInfo) -> None:
        """Replace the certificate snapshot."""
        with self._lock:
            self._status.certificate_info = info
            self._persist()

    def get_status(self) -> TlsStatus:
        """Independent copy of the current status."""
        with self._lock:
            return self._status.model_copy(deep=True)

    def reset(self) -> None:
        with self._lock:
            self._status = TlsStatus()
            self._persist()


# Singleton instance
_status_recorder: StatusRecorder | None = None


def get_status_recorder() -> StatusRecorder:
    """Get the global status recorder instance."""
    global _status_recorder
    if _status_recorder is None:
        _status_recorder = StatusRecorder()
    return _status_recorder
