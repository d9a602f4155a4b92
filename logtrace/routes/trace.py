from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.services.search import resolve_time_range
from logtrace.services.trace import device_sessions, link_code_devices, trace_events

router = APIRouter(prefix="/logs/trace", tags=["trace"], dependencies=[RequireActor])


@router.get("/link-code/{link_code}")
def trace_by_link_code(
    link_code: str,
    project_id: int = Query(...),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    return trace_events(db, project_id, "link_code", link_code, log_file_id, limit=limit)


@router.get("/link-code/{link_code}/devices")
def get_link_code_devices(
    link_code: str,
    project_id: int = Query(...),
    log_file_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return link_code_devices(db, project_id, link_code, log_file_id)


@router.get("/request-id/{request_id}")
def trace_by_request_id(
    request_id: str,
    project_id: int = Query(...),
    log_file_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    return trace_events(db, project_id, "request_id", request_id, log_file_id)


@router.get("/attempt/{attempt_id}")
def trace_by_attempt_id(
    attempt_id: str,
    project_id: int = Query(...),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    return trace_events(db, project_id, "attempt_id", attempt_id, log_file_id, limit=limit)


@router.get("/device/{device_mac}")
def trace_by_device_mac(
    device_mac: str,
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return trace_events(db, project_id, "device_mac", device_mac, log_file_id, start_ms, end_ms, limit)


@router.get("/device/{device_mac}/sessions")
def get_device_sessions(
    device_mac: str,
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    log_file_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return device_sessions(db, project_id, device_mac, start_ms, end_ms, log_file_id)


@router.get("/device-sn/{device_sn}")
def trace_by_device_sn(
    device_sn: str,
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return trace_events(db, project_id, "device_sn", device_sn, log_file_id, start_ms, end_ms, limit)
