"""Background ingestion worker: retries, dedupe and shutdown."""
import threading

import pytest

from logtrace.core.errors import DecodeError
from logtrace.models import LogFileStatus
from logtrace.services import worker as worker_module
from logtrace.services.ingestion import IngestionSummary
from logtrace.services.worker import IngestionWorker

from conftest import PROJECT_ID


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def post_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(worker_module, "refresh_sessions", lambda db, project_id, links: calls.append(("sessions", links)))
    monkeypatch.setattr(worker_module, "refresh_snapshot", lambda db, log_file_id: calls.append(("snapshot", log_file_id)))
    return calls


@pytest.fixture()
def make_worker(session_factory, sleeps):
    workers = []

    def factory(**kwargs):
        kwargs.setdefault("max_attempts", 3)
        w = IngestionWorker(
            max_workers=2, session_factory=session_factory, backoff_seconds=0.5, sleep=sleeps.append, **kwargs
        )
        workers.append(w)
        return w

    yield factory
    for w in workers:
        w.shutdown(wait=True)


def _summary(log_file_id):
    return IngestionSummary(
        log_file_id=log_file_id, project_id=PROJECT_ID, event_count=3, error_count=0, invalid_lines=0,
        link_codes=["L1"],
    )


def _script(monkeypatch, outcomes):
    """Make process_log_file raise or return the given outcomes in order."""
    attempts = []

    def fake_process(db, log_file_id, attempt=1):
        attempts.append(attempt)
        outcome = outcomes[len(attempts) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(worker_module, "process_log_file", fake_process)
    return attempts


class TestRetries:
    def test_transient_failures_back_off(self, monkeypatch, make_worker, sleeps, post_calls, log_file):
        attempts = _script(monkeypatch, [OSError("disk"), OSError("disk"), _summary(log_file.id)])
        summary = make_worker().submit(log_file.id).result(timeout=10)

        assert summary.event_count == 3
        assert attempts == [1, 2, 3]
        assert sleeps == [0.5, 1.0]
        assert post_calls == [("sessions", ["L1"]), ("snapshot", log_file.id)]

    def test_gives_up_after_max_attempts(self, monkeypatch, make_worker, sleeps, db_session, log_file):
        _script(monkeypatch, [OSError("disk full")] * 2)
        assert make_worker(max_attempts=2).submit(log_file.id).result(timeout=10) is None

        db_session.expire_all()
        assert log_file.status == LogFileStatus.failed
        assert log_file.error == "disk full"
        assert sleeps == [0.5]

    def test_decode_error_is_not_retried(self, monkeypatch, make_worker, sleeps, db_session, log_file):
        attempts = _script(monkeypatch, [DecodeError("Failed to decrypt all 2 container blocks", 2, 2)])
        assert make_worker().submit(log_file.id).result(timeout=10) is None

        db_session.expire_all()
        assert attempts == [1]
        assert sleeps == []
        assert log_file.status == LogFileStatus.failed
        assert "decrypt" in log_file.error

    def test_missing_file_skips_post_processing(self, monkeypatch, make_worker, post_calls):
        _script(monkeypatch, [None])
        assert make_worker().submit(999).result(timeout=10) is None
        assert post_calls == []

    def test_post_processing_failures_are_contained(self, monkeypatch, make_worker, log_file):
        _script(monkeypatch, [_summary(log_file.id)])
        snapshot_calls = []

        def broken_sessions(db, project_id, links):
            raise RuntimeError("session view broken")

        monkeypatch.setattr(worker_module, "refresh_sessions", broken_sessions)
        monkeypatch.setattr(worker_module, "refresh_snapshot", lambda db, log_file_id: snapshot_calls.append(log_file_id))

        assert make_worker().submit(log_file.id).result(timeout=10) is not None
        assert snapshot_calls == [log_file.id]


class TestScheduling:
    def test_in_flight_file_is_not_submitted_twice(self, monkeypatch, make_worker, post_calls, log_file):
        started = threading.Event()
        release = threading.Event()

        def slow_process(db, log_file_id, attempt=1):
            started.set()
            release.wait(timeout=10)
            return _summary(log_file_id)

        monkeypatch.setattr(worker_module, "process_log_file", slow_process)
        w = make_worker()
        first = w.submit(log_file.id)
        assert started.wait(timeout=10)
        assert w.submit(log_file.id) is first
        assert w.in_flight() == [log_file.id]

        release.set()
        first.result(timeout=10)
        w.shutdown(wait=True)
        assert w.in_flight() == []

    def test_refuses_after_shutdown(self, make_worker):
        w = make_worker()
        w.shutdown(wait=True)
        assert w.submit(1) is None


class TestModuleWorker:
    def test_enqueue_uses_shared_worker(self, monkeypatch):
        submitted = []

        class RecordingWorker:
            max_workers = 1

            def submit(self, log_file_id):
                submitted.append(log_file_id)

            def shutdown(self, wait=True):
                submitted.append("stopped")

        monkeypatch.setattr(worker_module, "_worker", None)
        monkeypatch.setattr(worker_module, "IngestionWorker", RecordingWorker)

        worker_module.enqueue_ingestion(7)
        worker_module.enqueue_ingestion(8)
        worker_module.shutdown_worker()

        assert submitted == [7, 8, "stopped"]
        assert worker_module._worker is None
