import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, UploadFile, File, Form, BackgroundTasks, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session
from sqlalchemy import select, func

from logtrace.core.config import settings, ensure_upload_dir
from logtrace.core.dependencies import CurrentActor, RequireActor
from logtrace.db.session import get_db
from logtrace.models.log_file import LogFile, LogFileStatus
from logtrace.schemas.log_file import LogFileResponse, UploadResponse
from logtrace.schemas.pagination import PaginationParams, PaginatedResponse
from logtrace.services.backend_quality import analyze_backend_quality
from logtrace.services.data_continuity import analyze_data_continuity
from logtrace.services.diagnosis import diagnose_log_file
from logtrace.services.stream_quality import analyze_stream_quality
from logtrace.services.worker import enqueue_ingestion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])


def validate_extension(filename: str) -> None:
    ext = filename.split(".")[-1].lower() if "." in filename else ""
    if ext not in settings.ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type. Allowed: {sorted(settings.ALLOWED_EXTENSIONS)}"
        )


def _get_file_or_404(db: Session, file_id: int, project_id: int) -> LogFile:
    lf = db.get(LogFile, file_id)
    if not lf or lf.project_id != project_id:
        raise HTTPException(status_code=404, detail="Log file not found")
    return lf


@router.post("/upload", response_model=UploadResponse, status_code=202)
async def upload_log_file(
    background_tasks: BackgroundTasks,
    actor: CurrentActor,
    project_id: int = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    if not file.filename:
        raise HTTPException(status_code=400, detail="Missing filename")

    validate_extension(file.filename)

    upload_dir: Path = ensure_upload_dir()
    stored_name = f"{uuid.uuid4().hex}_{Path(file.filename).name}"
    stored_path = (upload_dir / stored_name).resolve()
    bytes_written = 0
    max_bytes = settings.MAX_UPLOAD_MB * 1024 * 1024

    try:
        with stored_path.open("wb") as f:
            while True:
                chunk = await file.read(1024 * 1024)  # 1MB
                if not chunk:
                    break
                bytes_written += len(chunk)
                if bytes_written > max_bytes:
                    raise HTTPException(status_code=413, detail="File too large")
                f.write(chunk)
    except HTTPException:
        stored_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        stored_path.unlink(missing_ok=True)
        logger.exception("Failed to store upload %s", file.filename)
        raise HTTPException(status_code=500, detail=str(e))

    log_file = LogFile(
        project_id=project_id,
        filename=file.filename,
        stored_path=str(stored_path),
        size_bytes=bytes_written,
        status=LogFileStatus.queued,
        uploaded_by=actor.subject,
    )
    db.add(log_file)
    db.commit()
    db.refresh(log_file)
    logger.info(
        "Stored upload %s (%d bytes)", file.filename, bytes_written,
        extra={"log_file_id": log_file.id, "project_id": project_id},
    )

    background_tasks.add_task(enqueue_ingestion, log_file.id)

    return UploadResponse(log_file_id=log_file.id, status=log_file.status)


@router.get("/files", response_model=PaginatedResponse[LogFileResponse], dependencies=[RequireActor])
def list_log_files(
    db: Session = Depends(get_db),
    pagination: PaginationParams = Depends(),
    project_id: Optional[int] = Query(None, description="Filter by project"),
    status: Optional[str] = Query(None, description="Filter by processing status"),
):
    query = select(LogFile)
    count_query = select(func.count(LogFile.id))

    if project_id is not None:
        query = query.where(LogFile.project_id == project_id)
        count_query = count_query.where(LogFile.project_id == project_id)
    if status is not None:
        query = query.where(LogFile.status == status)
        count_query = count_query.where(LogFile.status == status)

    total = db.execute(count_query).scalar_one()

    query = query.order_by(LogFile.uploaded_at.desc(), LogFile.id.desc())
    query = query.offset(pagination.offset).limit(pagination.limit)
    files = db.execute(query).scalars().all()

    return PaginatedResponse(
        items=files, total=total, offset=pagination.offset, limit=pagination.limit,
    )


@router.get("/files/{file_id}", response_model=LogFileResponse, dependencies=[RequireActor])
def get_log_file(file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    return _get_file_or_404(db, file_id, project_id)


@router.delete("/files/{file_id}", status_code=204, dependencies=[RequireActor])
def delete_log_file(file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    lf = _get_file_or_404(db, file_id, project_id)
    stored_path = Path(lf.stored_path)
    db.delete(lf)
    db.commit()
    stored_path.unlink(missing_ok=True)
    logger.info("Deleted log file", extra={"log_file_id": file_id})
    return Response(status_code=204)


@router.post("/files/{file_id}/reprocess", response_model=UploadResponse, status_code=202,
             dependencies=[RequireActor])
def reprocess_log_file(
    file_id: int,
    background_tasks: BackgroundTasks,
    project_id: int = Query(...),
    db: Session = Depends(get_db),
):
    lf = _get_file_or_404(db, file_id, project_id)
    if lf.status == LogFileStatus.processing:
        raise HTTPException(status_code=409, detail="Log file is already being processed")
    lf.status = LogFileStatus.queued
    lf.error = None
    db.commit()
    background_tasks.add_task(enqueue_ingestion, lf.id)
    return UploadResponse(log_file_id=lf.id, status=lf.status)


@router.get("/files/{file_id}/stream-quality", dependencies=[RequireActor])
def get_stream_quality(file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    _get_file_or_404(db, file_id, project_id)
    return analyze_stream_quality(db, file_id)


@router.get("/files/{file_id}/data-continuity", dependencies=[RequireActor])
def get_data_continuity(file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    _get_file_or_404(db, file_id, project_id)
    return analyze_data_continuity(db, file_id)


@router.get("/files/{file_id}/backend-quality", dependencies=[RequireActor])
def get_backend_quality(
    file_id: int,
    project_id: int = Query(...),
    list_limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    _get_file_or_404(db, file_id, project_id)
    return analyze_backend_quality(db, file_id, list_limit)


@router.get("/files/{file_id}/diagnose", dependencies=[RequireActor])
def diagnose(file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    lf = _get_file_or_404(db, file_id, project_id)
    return diagnose_log_file(db, lf)
