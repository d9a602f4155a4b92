from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.services.anomalies import detect_anomalies
from logtrace.services.search import resolve_time_range

router = APIRouter(prefix="/anomalies", tags=["anomalies"], dependencies=[RequireActor])


@router.get("")
def get_anomalies(
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    device_mac: Optional[str] = Query(None),
    log_file_id: Optional[int] = Query(None),
    enhanced: bool = Query(False, description="Cluster evidence by time window and add recommendations"),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return detect_anomalies(db, project_id, start_ms, end_ms, device_mac, log_file_id, enhanced)
