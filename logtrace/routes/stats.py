from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from sqlalchemy import select, func

from logtrace.db.session import get_db
from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.models.log_file import LogFile
from logtrace.schemas.stats import StatsSummaryResponse, LevelBreakdown, NameCount, StatusCount
from logtrace.core.dependencies import RequireActor

router = APIRouter(prefix="/stats", tags=["stats"])

TOP_N = 10


@router.get("/summary", response_model=StatsSummaryResponse, dependencies=[RequireActor])
def get_stats_summary(project_id: int = Query(...), db: Session = Depends(get_db)):
    in_project = LogEvent.project_id == project_id
    real_events = LogEvent.event_name != PARSER_ERROR_EVENT

    total_events = db.execute(
        select(func.count(LogEvent.id)).where(in_project, real_events)
    ).scalar_one()

    total_files = db.execute(
        select(func.count(LogFile.id)).where(LogFile.project_id == project_id)
    ).scalar_one()

    level_rows = db.execute(
        select(LogEvent.level, func.count(LogEvent.id))
        .where(in_project, real_events)
        .group_by(LogEvent.level)
        .order_by(LogEvent.level)
    ).all()
    level_breakdown = [
        LevelBreakdown(level=row[0], count=row[1]) for row in level_rows
    ]

    event_rows = db.execute(
        select(LogEvent.event_name, func.count(LogEvent.id))
        .where(in_project, real_events)
        .group_by(LogEvent.event_name)
        .order_by(func.count(LogEvent.id).desc(), LogEvent.event_name)
        .limit(TOP_N)
    ).all()
    top_events = [NameCount(name=row[0], count=row[1]) for row in event_rows]

    code_rows = db.execute(
        select(LogEvent.error_code, func.count(LogEvent.id))
        .where(in_project, LogEvent.error_code.is_not(None))
        .group_by(LogEvent.error_code)
        .order_by(func.count(LogEvent.id).desc(), LogEvent.error_code)
        .limit(TOP_N)
    ).all()
    top_error_codes = [NameCount(name=row[0], count=row[1]) for row in code_rows]

    status_rows = db.execute(
        select(LogFile.status, func.count(LogFile.id))
        .where(LogFile.project_id == project_id)
        .group_by(LogFile.status)
        .order_by(LogFile.status)
    ).all()
    files_by_status = [StatusCount(status=row[0], count=row[1]) for row in status_rows]

    return StatsSummaryResponse(
        project_id=project_id,
        total_events=total_events,
        total_files=total_files,
        level_breakdown=level_breakdown,
        top_events=top_events,
        top_error_codes=top_error_codes,
        files_by_status=files_by_status,
    )
