from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from logtrace.core.dependencies import RequireActor
from logtrace.db.session import get_db
from logtrace.schemas.log_event import EventContextResponse, LogEventResponse, TrackingLookupResponse
from logtrace.schemas.pagination import CursorPage
from logtrace.services.anomalies import error_context, error_distribution
from logtrace.services.search import (
    EventFilters,
    event_context,
    resolve_time_range,
    search_events,
    tracking_values,
)

router = APIRouter(prefix="/events", tags=["events"], dependencies=[RequireActor])


@router.get("/search", response_model=CursorPage[LogEventResponse])
def search(
    project_id: int = Query(...),
    start: Optional[datetime] = Query(None, description="Events at or after this time"),
    end: Optional[datetime] = Query(None, description="Events at or before this time"),
    event_name: Optional[str] = Query(None),
    level: Optional[int] = Query(None, ge=1, le=4),
    level_gte: Optional[int] = Query(None, ge=1, le=4),
    level_lte: Optional[int] = Query(None, ge=1, le=4),
    stage: Optional[str] = Query(None),
    op: Optional[str] = Query(None),
    result: Optional[str] = Query(None),
    device_sn: Optional[str] = Query(None),
    device_mac: Optional[str] = Query(None),
    link_code: Optional[str] = Query(None),
    request_id: Optional[str] = Query(None),
    attempt_id: Optional[str] = Query(None),
    error_code: Optional[str] = Query(None),
    reason_code: Optional[str] = Query(None),
    msg_contains: Optional[str] = Query(None, description="Case-insensitive match on the message"),
    q: Optional[str] = Query(None, description="Case-insensitive match on name, raw line and client fields"),
    log_file_id: Optional[int] = Query(None),
    exclude_markers: bool = Query(False, description="Hide PARSER_ERROR markers"),
    cursor: Optional[str] = Query(None),
    direction: Literal["asc", "desc"] = Query("desc"),
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    filters = EventFilters(
        event_name=event_name, level=level, level_gte=level_gte, level_lte=level_lte,
        stage=stage, op=op, result=result,
        device_sn=device_sn, device_mac=device_mac, link_code=link_code,
        request_id=request_id, attempt_id=attempt_id, error_code=error_code, reason_code=reason_code,
        msg_contains=msg_contains, q=q, log_file_id=log_file_id, exclude_markers=exclude_markers,
    )
    items, next_cursor = search_events(
        db, project_id, filters, start_ms, end_ms, limit=limit, cursor=cursor, direction=direction,
    )
    return CursorPage(items=items, next_cursor=next_cursor, limit=limit)


@router.get("/tracking/{field}", response_model=TrackingLookupResponse)
def lookup_tracking_values(
    field: str,
    project_id: int = Query(...),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    prefix: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    items = tracking_values(db, project_id, field, start_ms, end_ms, prefix=prefix, limit=limit)
    return TrackingLookupResponse(field=field, items=items)


@router.get("/errors/distribution")
def get_error_distribution(
    project_id: int = Query(...),
    start: datetime = Query(...),
    end: datetime = Query(...),
    device_mac: Optional[str] = Query(None),
    log_file_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(start, end)
    return error_distribution(db, project_id, start_ms, end_ms, device_mac, log_file_id)


@router.get("/{event_id}", response_model=EventContextResponse)
def get_event_with_context(
    event_id: int,
    project_id: int = Query(...),
    before: int = Query(10, ge=0, le=100),
    after: int = Query(10, ge=0, le=100),
    db: Session = Depends(get_db),
):
    return event_context(db, project_id, event_id, before=before, after=after)


@router.get("/{event_id}/error-context")
def get_error_context(
    event_id: int,
    project_id: int = Query(...),
    context_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    result = error_context(db, project_id, event_id, context_size)
    if result is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return result
