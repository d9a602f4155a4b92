from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.models.device_session import SessionStatus
from logtrace.schemas.session import AggregateSessionsRequest, DeviceSessionResponse
from logtrace.services.search import resolve_time_range
from logtrace.services.sessions import (
    aggregate_sessions,
    compare_sessions,
    derive_file_sessions,
    get_session_detail,
    list_sessions,
)

router = APIRouter(prefix="/sessions", tags=["sessions"], dependencies=[RequireActor])


@router.post("/aggregate")
def aggregate(payload: AggregateSessionsRequest, db: Session = Depends(get_db)):
    start_ms, end_ms = resolve_time_range(payload.start_time, payload.end_time)
    sessions = aggregate_sessions(db, payload.project_id, start_ms, end_ms, payload.force_refresh)
    return {
        "project_id": payload.project_id,
        "count": len(sessions),
        "items": [DeviceSessionResponse.model_validate(s) for s in sessions],
    }


@router.get("")
def get_sessions(
    project_id: int = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    device_mac: Optional[str] = Query(None),
    status: Optional[SessionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    rows, has_more = list_sessions(
        db, project_id, start_ms, end_ms, device_mac, status.value if status else None, limit,
    )
    return {
        "items": [DeviceSessionResponse.model_validate(s) for s in rows],
        "has_more": has_more,
    }


@router.get("/files/{log_file_id}")
def get_file_sessions(
    log_file_id: int,
    project_id: int = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    device_mac: Optional[str] = Query(None),
    status: Optional[SessionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    items, has_more = derive_file_sessions(
        db, project_id, log_file_id, start_ms, end_ms, device_mac,
        status.value if status else None, limit,
    )
    return {"items": items, "has_more": has_more}


@router.get("/compare")
def compare(
    project_id: int = Query(...),
    link_code_a: str = Query(...),
    link_code_b: str = Query(...),
    db: Session = Depends(get_db),
):
    result = compare_sessions(db, project_id, link_code_a, link_code_b)
    if result is None:
        raise HTTPException(status_code=404, detail="One or both sessions have no events")
    return result


@router.get("/{link_code}")
def get_session(
    link_code: str,
    project_id: int = Query(...),
    log_file_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    detail = get_session_detail(db, project_id, link_code, log_file_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return detail
