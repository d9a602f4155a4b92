import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from logtrace.core.dependencies import CurrentActor, RequireActor
from logtrace.db.session import get_db
from logtrace.models.analysis_report import ReportType
from logtrace.models.known_issue import IssueCategory
from logtrace.models.log_file import LogFile
from logtrace.schemas.known_issue import (
    KnownIssueCreate,
    KnownIssueResponse,
    KnownIssueUpdate,
    MatchBatchRequest,
    MatchEventRequest,
    ReportCreate,
    ReportResponse,
)
from logtrace.schemas.pagination import PaginatedResponse, PaginationParams
from logtrace.services.ingestion import msg_to_text
from logtrace.services.known_issues import (
    MatchInput,
    create_issue,
    delete_issue,
    get_issue,
    list_issues,
    match_batch,
    match_event,
    match_log_file,
    update_issue,
)
from logtrace.services.reports import generate_report, get_report, list_reports, report_to_markdown
from logtrace.services.search import resolve_time_range

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/known-issues", tags=["known-issues"])

NULLABLE_ISSUE_FIELDS = {"error_code", "event_pattern", "msg_pattern"}


def _to_input(event: MatchEventRequest) -> MatchInput:
    return MatchInput(
        event_name=event.event_name, error_code=event.error_code, msg=msg_to_text(event.msg), id=event.id,
    )


def _issue_or_404(db: Session, project_id: int, issue_id: int):
    issue = get_issue(db, project_id, issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Known issue not found")
    return issue


@router.post("", response_model=KnownIssueResponse, status_code=201)
def create(
    payload: KnownIssueCreate,
    actor: CurrentActor,
    project_id: int = Query(...),
    db: Session = Depends(get_db),
):
    return create_issue(db, project_id, payload.model_dump(mode="json"), created_by=actor.subject)


@router.get("", response_model=PaginatedResponse[KnownIssueResponse], dependencies=[RequireActor])
def list_known_issues(
    project_id: int = Query(...),
    pagination: PaginationParams = Depends(),
    is_active: Optional[bool] = Query(None),
    category: Optional[IssueCategory] = Query(None),
    search: Optional[str] = Query(None, description="Case-insensitive match on title"),
    db: Session = Depends(get_db),
):
    items, total = list_issues(
        db, project_id, pagination.offset, pagination.limit, is_active,
        category.value if category else None, search,
    )
    return PaginatedResponse(items=items, total=total, offset=pagination.offset, limit=pagination.limit)


@router.post("/match", dependencies=[RequireActor])
def match_one(payload: MatchEventRequest, project_id: int = Query(...), db: Session = Depends(get_db)):
    matches = match_event(db, project_id, _to_input(payload))
    return {"matches": [m.to_dict() for m in matches]}


@router.post("/match-batch", dependencies=[RequireActor])
def match_many(payload: MatchBatchRequest, project_id: int = Query(...), db: Session = Depends(get_db)):
    return match_batch(db, project_id, [_to_input(e) for e in payload.events])


@router.post("/match-file/{log_file_id}", dependencies=[RequireActor])
def match_file(log_file_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    lf = db.get(LogFile, log_file_id)
    if not lf or lf.project_id != project_id:
        raise HTTPException(status_code=404, detail="Log file not found")
    return match_log_file(db, project_id, log_file_id)


@router.post("/reports", response_model=ReportResponse, status_code=201)
def create_report(
    payload: ReportCreate,
    actor: CurrentActor,
    project_id: int = Query(...),
    db: Session = Depends(get_db),
):
    start_ms, end_ms = resolve_time_range(payload.start_time, payload.end_time)
    return generate_report(
        db, project_id, payload.report_type.value,
        title=payload.title, link_code=payload.link_code, device_mac=payload.device_mac,
        start_ms=start_ms, end_ms=end_ms, created_by=actor.subject,
    )


@router.get("/reports", response_model=list[ReportResponse], dependencies=[RequireActor])
def get_reports(
    project_id: int = Query(...),
    report_type: Optional[ReportType] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return list_reports(db, project_id, report_type.value if report_type else None, limit)


@router.get("/reports/{report_id}", response_model=ReportResponse, dependencies=[RequireActor])
def get_one_report(report_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    report = get_report(db, project_id, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@router.get("/reports/{report_id}/markdown", response_class=PlainTextResponse, dependencies=[RequireActor])
def export_report(report_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    report = get_report(db, project_id, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return PlainTextResponse(report_to_markdown(report), media_type="text/markdown")


@router.get("/{issue_id}", response_model=KnownIssueResponse, dependencies=[RequireActor])
def get_known_issue(issue_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    return _issue_or_404(db, project_id, issue_id)


@router.patch("/{issue_id}", response_model=KnownIssueResponse, dependencies=[RequireActor])
def update_known_issue(
    issue_id: int, payload: KnownIssueUpdate, project_id: int = Query(...), db: Session = Depends(get_db),
):
    issue = _issue_or_404(db, project_id, issue_id)
    changes = {
        k: v for k, v in payload.model_dump(mode="json", exclude_unset=True).items()
        if v is not None or k in NULLABLE_ISSUE_FIELDS
    }
    return update_issue(db, issue, changes)


@router.delete("/{issue_id}", status_code=204, dependencies=[RequireActor])
def delete_known_issue(issue_id: int, project_id: int = Query(...), db: Session = Depends(get_db)):
    issue = _issue_or_404(db, project_id, issue_id)
    delete_issue(db, issue)
    logger.info("Deleted known issue %d", issue_id, extra={"project_id": project_id})
    return Response(status_code=204)
