"""Bounded background pool that ingests uploaded files.

Jobs are keyed by log file id: a file already queued or running is not
submitted twice. Each job owns its database session and retries transient
failures with exponential backoff; a file that cannot be decoded fails
immediately.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from sqlalchemy.orm import Session

from logtrace.core.config import settings
from logtrace.core.errors import DecodeError
from logtrace.db.session import SessionLocal
from logtrace.services.ingestion import IngestionSummary, mark_failed, process_log_file
from logtrace.services.sessions import refresh_sessions
from logtrace.services.snapshots import refresh_snapshot

logger = logging.getLogger(__name__)


class IngestionWorker:
    def __init__(
        self,
        max_workers: int | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_workers = max_workers or settings.processing_concurrency()
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts or settings.INGESTION_MAX_ATTEMPTS)
        self.backoff_seconds = (
            settings.INGESTION_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ingest")
        self._lock = threading.Lock()
        self._in_flight: dict[int, Future] = {}
        self._closed = False

    def submit(self, log_file_id: int) -> Future | None:
        """Queue a file; returns the running job's future if it is already in flight."""
        with self._lock:
            if self._closed:
                logger.warning(
                    "Worker is shut down, refusing log_file_id=%d", log_file_id,
                    extra={"log_file_id": log_file_id},
                )
                return None
            existing = self._in_flight.get(log_file_id)
            if existing is not None:
                return existing
            future = self._executor.submit(self._run, log_file_id)
            self._in_flight[log_file_id] = future
        future.add_done_callback(lambda _: self._release(log_file_id))
        return future

    def in_flight(self) -> list[int]:
        with self._lock:
            return sorted(self._in_flight)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.info("Ingestion worker stopped")

    def _release(self, log_file_id: int) -> None:
        with self._lock:
            self._in_flight.pop(log_file_id, None)

    def _run(self, log_file_id: int) -> IngestionSummary | None:
        for attempt in range(1, self.max_attempts + 1):
            log_extra = {"log_file_id": log_file_id, "attempt": attempt}
            db = self.session_factory()
            try:
                summary = process_log_file(db, log_file_id, attempt=attempt)
                if summary is not None:
                    self._post_ingestion(db, summary)
                return summary
            except DecodeError as exc:
                logger.error("Log file could not be decoded: %s", exc, extra=log_extra)
                mark_failed(db, log_file_id, str(exc))
                return None
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.exception("Ingestion gave up after %d attempts", attempt, extra=log_extra)
                    mark_failed(db, log_file_id, str(exc)[:2000])
                    return None
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning("Ingestion failed, retrying in %.1fs: %s", delay, exc, extra=log_extra)
            finally:
                db.close()
            self._sleep(delay)
        return None

    def _post_ingestion(self, db: Session, summary: IngestionSummary) -> None:
        log_extra = {"log_file_id": summary.log_file_id, "project_id": summary.project_id}
        try:
            refresh_sessions(db, summary.project_id, summary.link_codes)
        except Exception:
            db.rollback()
            logger.exception("Session refresh after ingestion failed", extra=log_extra)
        try:
            refresh_snapshot(db, summary.log_file_id)
        except Exception:
            db.rollback()
            logger.exception("Snapshot refresh after ingestion failed", extra=log_extra)


_worker: IngestionWorker | None = None
_worker_lock = threading.Lock()


def get_worker() -> IngestionWorker:
    global _worker
    with _worker_lock:
        if _worker is None:
            _worker = IngestionWorker()
            logger.info("Ingestion worker started with %d threads", _worker.max_workers)
        return _worker


def enqueue_ingestion(log_file_id: int) -> None:
    get_worker().submit(log_file_id)


def shutdown_worker(wait: bool = True) -> None:
    global _worker
    with _worker_lock:
        worker, _worker = _worker, None
    if worker is not None:
        worker.shutdown(wait=wait)
