"""
Unit tests for TLS status recording.
"""

import json
import threading
from datetime import datetime, timezone

from certkeeper.core.paths import resolve_cert_paths
from certkeeper.core.status_recorder import StatusRecorder
from certkeeper.models.certificate import CertificateInfo


class TestStatusRecorder:
    """Test counters, snapshots and persistence."""

    def test_initial_status(self, recorder):
        status = recorder.get_status()

        assert status.connections.total == 0
        assert status.last_connection is None
        assert status.certificate_info.valid is False

    def test_success_and_failure_counts(self, recorder):
        recorder.record_success()
        recorder.record_success()
        recorder.record_failure("handshake failed")

        status = recorder.get_status()
        assert status.connections.successful == 2
        assert status.connections.failed == 1
        assert status.connections.total == 3
        assert status.last_error == "handshake failed"

    def test_success_clears_last_error(self, recorder):
        recorder.record_failure("timeout")
        recorder.record_success()

        assert recorder.get_status().last_error is None

    def test_record_error_does_not_count(self, recorder):
        recorder.record_error("backend unavailable")

        status = recorder.get_status()
        assert status.last_error == "backend unavailable"
        assert status.connections.total == 0

    def test_get_status_returns_copy(self, recorder):
        """Test mutating a returned status does not affect the recorder."""
        status = recorder.get_status()
        status.connections.successful = 99

        assert recorder.get_status().connections.successful == 0

    def test_update_certificate_info(self, recorder):
        info = CertificateInfo(valid=True, domain="test.example.com", not_after=datetime(2030, 1, 1, tzinfo=timezone.utc))

        recorder.update_certificate_info(info)

        assert recorder.get_status().certificate_info == info

    def test_persisted_after_mutation(self, recorder, cert_paths):
        recorder.record_success()
        recorder.record_failure("refused")

        data = json.loads(cert_paths.status_file.read_text())
        assert data["connections"] == {"successful": 1, "failed": 1, "total": 2}
        assert data["last_error"] == "refused"

    def test_persistence_failure_is_not_raised(self, tmp_path, caplog):
        """Test an unwritable status location only logs a warning."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        recorder = StatusRecorder(paths=resolve_cert_paths("production", blocker, tmp_path))

        recorder.record_success()

        assert recorder.get_status().connections.successful == 1
        assert "Failed to save TLS status" in caplog.text

    def test_concurrent_updates(self, recorder):
        """Test total always equals successful + failed under concurrency."""

        def worker():
            for i in range(50):
                if i % 2:
                    recorder.record_success()
                else:
                    recorder.record_failure("error")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        status = recorder.get_status()
        assert status.connections.total == 400
        assert status.connections.successful == 200
        assert status.connections.failed == 200

    def test_reset(self, recorder):
        recorder.record_success()

        recorder.reset()

        assert recorder.get_status().connections.total == 0
