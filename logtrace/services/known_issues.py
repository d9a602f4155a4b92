"""Matching events against the support-curated known-issue rules."""
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session

from logtrace.core.errors import BatchTooLarge
from logtrace.models.known_issue import KnownIssue
from logtrace.models.log_event import LogEvent

logger = logging.getLogger(__name__)

MAX_BATCH_EVENTS = 100
FILE_MATCH_LIMIT = 100

ERROR_CODE_CONFIDENCE = 1.0
EVENT_PATTERN_CONFIDENCE = 0.9
MSG_PATTERN_CONFIDENCE = 0.8


@dataclass(frozen=True)
class MatchInput:
    event_name: str
    error_code: str | None = None
    msg: str | None = None
    id: Any = None


@dataclass(frozen=True)
class MatchResult:
    issue: KnownIssue
    match_type: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue.id,
            "title": self.issue.title,
            "description": self.issue.description,
            "solution": self.issue.solution,
            "category": self.issue.category,
            "severity": self.issue.severity,
            "error_code": self.issue.error_code,
            "event_pattern": self.issue.event_pattern,
            "match_type": self.match_type,
            "confidence": self.confidence,
        }


def _search(pattern: str, text: str, issue_id: int) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error as e:
        logger.warning("Known issue %s has invalid pattern %r: %s", issue_id, pattern, e)
        return False


def match_issue(issue: KnownIssue, event: MatchInput) -> MatchResult | None:
    """First rule that fires wins: error code, then event pattern, then msg pattern."""
    if issue.error_code and event.error_code and issue.error_code == event.error_code:
        return MatchResult(issue, "errorCode", ERROR_CODE_CONFIDENCE)
    if issue.event_pattern and _search(issue.event_pattern, event.event_name, issue.id):
        return MatchResult(issue, "eventPattern", EVENT_PATTERN_CONFIDENCE)
    if issue.msg_pattern and event.msg and _search(issue.msg_pattern, event.msg, issue.id):
        return MatchResult(issue, "msgPattern", MSG_PATTERN_CONFIDENCE)
    return None


def active_issues(db: Session, project_id: int) -> list[KnownIssue]:
    return list(db.execute(
        select(KnownIssue)
        .where(KnownIssue.project_id == project_id, KnownIssue.is_active.is_(True))
        .order_by(KnownIssue.severity.desc(), KnownIssue.id.asc())
    ).scalars().all())


def increment_hit_counts(db: Session, issue_ids) -> None:
    ids = sorted(set(issue_ids))
    if not ids:
        return
    db.execute(
        update(KnownIssue)
        .where(KnownIssue.id.in_(ids))
        .values(hit_count=KnownIssue.hit_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def match_event(db: Session, project_id: int, event: MatchInput) -> list[MatchResult]:
    issues = active_issues(db, project_id)
    matches = [m for m in (match_issue(issue, event) for issue in issues) if m is not None]
    increment_hit_counts(db, (m.issue.id for m in matches))
    return matches


def match_batch(db: Session, project_id: int, events: list[MatchInput]) -> dict[str, Any]:
    if len(events) > MAX_BATCH_EVENTS:
        raise BatchTooLarge(f"At most {MAX_BATCH_EVENTS} events can be matched per batch")

    issues = active_issues(db, project_id)
    results = []
    hit_ids: set[int] = set()
    for event in events:
        matches = [m for m in (match_issue(issue, event) for issue in issues) if m is not None]
        if not matches:
            continue
        hit_ids.update(m.issue.id for m in matches)
        results.append({"event_id": event.id, "matches": [m.to_dict() for m in matches]})

    increment_hit_counts(db, hit_ids)
    return {
        "results": results,
        "total_matches": sum(len(r["matches"]) for r in results),
        "events_with_matches": len(results),
        "hit_issue_ids": sorted(hit_ids),
    }


def match_log_file(db: Session, project_id: int, log_file_id: int) -> dict[str, Any]:
    """Match the first error-ish events of a stored file against the project's issues."""
    rows = db.execute(
        select(LogEvent)
        .where(
            LogEvent.project_id == project_id,
            LogEvent.log_file_id == log_file_id,
            or_(LogEvent.level >= 3, LogEvent.error_code.is_not(None)),
        )
        .order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
        .limit(FILE_MATCH_LIMIT)
    ).scalars().all()
    inputs = [
        MatchInput(event_name=e.event_name, error_code=e.error_code, msg=e.msg_text, id=e.id)
        for e in rows
    ]
    result = match_batch(db, project_id, inputs)
    result["scanned_events"] = len(inputs)
    return result


# CRUD

EDITABLE_FIELDS = (
    "title", "description", "solution", "category", "severity",
    "error_code", "event_pattern", "msg_pattern", "is_active",
)


def create_issue(db: Session, project_id: int, data: dict[str, Any], created_by: str | None = None) -> KnownIssue:
    issue = KnownIssue(project_id=project_id, created_by=created_by, **{
        k: v for k, v in data.items() if k in EDITABLE_FIELDS and v is not None
    })
    db.add(issue)
    db.commit()
    db.refresh(issue)
    logger.info("Created known issue %d", issue.id, extra={"project_id": project_id})
    return issue


def get_issue(db: Session, project_id: int, issue_id: int) -> KnownIssue | None:
    return db.execute(
        select(KnownIssue).where(KnownIssue.id == issue_id, KnownIssue.project_id == project_id)
    ).scalar_one_or_none()


def update_issue(db: Session, issue: KnownIssue, changes: dict[str, Any]) -> KnownIssue:
    for key, value in changes.items():
        if key in EDITABLE_FIELDS:
            setattr(issue, key, value)
    db.commit()
    db.refresh(issue)
    return issue


def delete_issue(db: Session, issue: KnownIssue) -> None:
    db.delete(issue)
    db.commit()


def list_issues(
    db: Session,
    project_id: int,
    offset: int = 0,
    limit: int = 50,
    is_active: bool | None = None,
    category: str | None = None,
    search: str | None = None,
) -> tuple[list[KnownIssue], int]:
    query = select(KnownIssue).where(KnownIssue.project_id == project_id)
    count_query = select(func.count(KnownIssue.id)).where(KnownIssue.project_id == project_id)

    if is_active is not None:
        query = query.where(KnownIssue.is_active.is_(is_active))
        count_query = count_query.where(KnownIssue.is_active.is_(is_active))
    if category is not None:
        query = query.where(KnownIssue.category == category)
        count_query = count_query.where(KnownIssue.category == category)
    if search:
        query = query.where(KnownIssue.title.ilike(f"%{search}%"))
        count_query = count_query.where(KnownIssue.title.ilike(f"%{search}%"))

    total = db.execute(count_query).scalar_one()
    query = query.order_by(
        KnownIssue.severity.desc(), KnownIssue.hit_count.desc(), KnownIssue.id.asc()
    ).offset(offset).limit(limit)
    return list(db.execute(query).scalars().all()), total
