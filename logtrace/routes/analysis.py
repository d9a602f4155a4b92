import logging
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from logtrace.core.config import settings
from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.schemas.analysis import ArtifactResponse, ProjectRefreshAccepted, SnapshotRefreshResponse
from logtrace.services.snapshots import (
    TEMPLATE_VERSION,
    get_current_artifact,
    refresh_snapshot,
    run_project_refresh,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analysis", tags=["analysis"], dependencies=[RequireActor])


@router.get("/files/{log_file_id}/{artifact}", response_model=ArtifactResponse)
def get_artifact(
    log_file_id: int,
    artifact: Literal["main-flow", "coverage", "stream-quality"],
    db: Session = Depends(get_db),
):
    data, recomputed = get_current_artifact(db, log_file_id, artifact)
    return ArtifactResponse(
        log_file_id=log_file_id,
        artifact=artifact,
        template_version=data.get("template_version", TEMPLATE_VERSION),
        recomputed=recomputed,
        data=data,
    )


@router.post("/files/{log_file_id}/refresh", response_model=SnapshotRefreshResponse)
def refresh_file(log_file_id: int, db: Session = Depends(get_db)):
    snapshot = refresh_snapshot(db, log_file_id)
    return SnapshotRefreshResponse(
        log_file_id=log_file_id, template_version=snapshot.template_version, status=snapshot.status,
    )


@router.post("/projects/{project_id}/refresh", response_model=ProjectRefreshAccepted, status_code=202)
def refresh_project(
    project_id: int,
    background_tasks: BackgroundTasks,
    limit: int = Query(settings.ANALYSIS_REFRESH_LIMIT, ge=1, le=1000),
):
    background_tasks.add_task(run_project_refresh, project_id, limit)
    logger.info("Scheduled snapshot refresh for up to %d files", limit, extra={"project_id": project_id})
    return ProjectRefreshAccepted(project_id=project_id, template_version=TEMPLATE_VERSION, limit=limit)
