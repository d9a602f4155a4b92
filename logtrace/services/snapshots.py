"""Versioned per-file analysis artifacts.

Each artifact embeds the ``template_version`` it was computed with. Reads
through :func:`get_current_artifact` recompute synchronously whenever the
stored artifact is missing or older than :data:`TEMPLATE_VERSION`.
"""
import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.core.errors import NotFound
from logtrace.db.session import SessionLocal
from logtrace.models.analysis_snapshot import AnalysisSnapshot
from logtrace.models.log_file import LogFile
from logtrace.services.event_flow import analyze_event_coverage, analyze_main_flow
from logtrace.services.stream_quality import analyze_stream_quality

logger = logging.getLogger(__name__)

# Bump when main-flow stages, the known-event catalogue or stream scoring change.
TEMPLATE_VERSION = 20260213

ARTIFACT_COLUMNS: dict[str, str] = {
    "main-flow": "main_flow_analysis",
    "coverage": "event_coverage_analysis",
    "stream-quality": "stream_quality",
}

ANALYZERS: dict[str, Callable[[Session, int], dict[str, Any]]] = {
    "main_flow_analysis": analyze_main_flow,
    "event_coverage_analysis": analyze_event_coverage,
    "stream_quality": analyze_stream_quality,
}


def is_stale(artifact: Any, current: int = TEMPLATE_VERSION) -> bool:
    if not isinstance(artifact, dict):
        return True
    version = artifact.get("template_version")
    if isinstance(version, bool) or not isinstance(version, int):
        return True
    return version < current


def compute_artifacts(db: Session, log_file_id: int) -> dict[str, dict[str, Any]]:
    artifacts = {}
    for column, analyze in ANALYZERS.items():
        result = analyze(db, log_file_id)
        artifacts[column] = {"template_version": TEMPLATE_VERSION, **result}
    return artifacts


def _get_log_file(db: Session, log_file_id: int) -> LogFile:
    lf = db.get(LogFile, log_file_id)
    if not lf:
        raise NotFound("Log file not found", code="LOG_FILE_NOT_FOUND")
    return lf


def get_snapshot(db: Session, log_file_id: int) -> AnalysisSnapshot | None:
    return db.execute(
        select(AnalysisSnapshot).where(AnalysisSnapshot.log_file_id == log_file_id)
    ).scalar_one_or_none()


def _snapshot_for(db: Session, log_file_id: int, project_id: int) -> AnalysisSnapshot:
    snapshot = get_snapshot(db, log_file_id)
    if snapshot is None:
        snapshot = AnalysisSnapshot(
            log_file_id=log_file_id, project_id=project_id, template_version=TEMPLATE_VERSION
        )
        db.add(snapshot)
    return snapshot


def refresh_snapshot(db: Session, log_file_id: int) -> AnalysisSnapshot:
    """Recompute every artifact for one file and persist them."""
    project_id = _get_log_file(db, log_file_id).project_id
    try:
        artifacts = compute_artifacts(db, log_file_id)
    except Exception as exc:
        db.rollback()
        logger.exception("Snapshot computation failed", extra={"log_file_id": log_file_id})
        snapshot = _snapshot_for(db, log_file_id, project_id)
        snapshot.status = "failed"
        snapshot.error = str(exc)[:2000]
        snapshot.analyzed_at = datetime.utcnow()
        db.commit()
        raise

    snapshot = _snapshot_for(db, log_file_id, project_id)

    for column, artifact in artifacts.items():
        setattr(snapshot, column, artifact)
    snapshot.template_version = TEMPLATE_VERSION
    snapshot.status = "completed"
    snapshot.error = None
    snapshot.analyzed_at = datetime.utcnow()
    db.commit()
    db.refresh(snapshot)
    logger.info("Analysis snapshot refreshed", extra={"log_file_id": log_file_id})
    return snapshot


def get_current_artifact(db: Session, log_file_id: int, name: str) -> tuple[dict[str, Any], bool]:
    """Return ``(artifact, recomputed)`` for one of the :data:`ARTIFACT_COLUMNS` names."""
    column = ARTIFACT_COLUMNS.get(name)
    if column is None:
        raise NotFound(f"Unknown analysis artifact: {name}", code="ARTIFACT_NOT_FOUND")
    _get_log_file(db, log_file_id)

    snapshot = get_snapshot(db, log_file_id)
    artifact = getattr(snapshot, column) if snapshot else None
    if not is_stale(artifact):
        return artifact, False

    logger.info("Stale %s artifact, recomputing", name, extra={"log_file_id": log_file_id})
    snapshot = refresh_snapshot(db, log_file_id)
    return getattr(snapshot, column), True


def refresh_project_snapshots(db: Session, project_id: int, limit: int = 200) -> dict[str, Any]:
    """Recompute snapshots for the most recently uploaded files of a project."""
    ids = db.execute(
        select(LogFile.id)
        .where(LogFile.project_id == project_id)
        .order_by(LogFile.uploaded_at.desc(), LogFile.id.desc())
        .limit(limit)
    ).scalars().all()

    refreshed = 0
    failed_ids = []
    for log_file_id in ids:
        try:
            refresh_snapshot(db, log_file_id)
            refreshed += 1
        except Exception:
            db.rollback()
            failed_ids.append(log_file_id)

    logger.info(
        "Project snapshots refreshed: %d ok, %d failed", refreshed, len(failed_ids),
        extra={"project_id": project_id},
    )
    return {
        "project_id": project_id,
        "template_version": TEMPLATE_VERSION,
        "total_log_files": len(ids),
        "refreshed": refreshed,
        "failed": len(failed_ids),
        "failed_log_file_ids": failed_ids,
    }


def run_project_refresh(project_id: int, limit: int = 200) -> None:
    """Background entry point; owns its own database session."""
    db = SessionLocal()
    try:
        refresh_project_snapshots(db, project_id, limit)
    except Exception:
        logger.exception("Project snapshot refresh failed", extra={"project_id": project_id})
    finally:
        db.close()
