from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.services.commands import analyze_command_chains, reconnect_summary
from logtrace.services.search import resolve_time_range

router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[RequireActor])


@router.get("/chains")
def get_command_chains(
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    device_mac: Optional[str] = Query(None),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return analyze_command_chains(db, project_id, start_ms, end_ms, device_mac, log_file_id, limit)


@router.get("/reconnects")
def get_reconnect_summary(
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    device_mac: Optional[str] = Query(None),
    log_file_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    reconnect_window_ms: Optional[int] = Query(None, ge=1_000, le=30 * 60_000),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return reconnect_summary(
        db, project_id, start_ms, end_ms, device_mac, log_file_id, limit, reconnect_window_ms,
    )
