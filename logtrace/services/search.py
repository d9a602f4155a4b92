import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from logtrace.core.errors import ApiError, InvalidCursor, InvalidTimeRange, NotFound
from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.services.tracking import TRACKING_FIELD_NAMES

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 1000
DEFAULT_CONTEXT = 10
MAX_CONTEXT = 100
DEFAULT_LOOKUP_LIMIT = 50
MAX_LOOKUP_LIMIT = 500

ID_FILTERS = ("device_sn", "device_mac", "link_code", "request_id", "attempt_id", "error_code", "reason_code")
FREE_TEXT_COLUMNS = (
    LogEvent.event_name,
    LogEvent.raw_line,
    LogEvent.terminal_info,
    LogEvent.thread_name,
    LogEvent.app_id,
    LogEvent.sdk_version,
)


@dataclass
class EventFilters:
    event_name: str | None = None
    level: int | None = None
    level_gte: int | None = None
    level_lte: int | None = None
    stage: str | None = None
    op: str | None = None
    result: str | None = None
    device_sn: str | None = None
    device_mac: str | None = None
    link_code: str | None = None
    request_id: str | None = None
    attempt_id: str | None = None
    error_code: str | None = None
    reason_code: str | None = None
    msg_contains: str | None = None
    q: str | None = None
    log_file_id: int | None = None
    exclude_markers: bool = False


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def resolve_time_range(start: datetime | None, end: datetime | None) -> tuple[int | None, int | None]:
    """Epoch-ms bounds for a query window; naive datetimes are taken as UTC."""
    start_ms = to_epoch_ms(start) if start is not None else None
    end_ms = to_epoch_ms(end) if end is not None else None
    if start_ms is not None and end_ms is not None and end_ms < start_ms:
        raise InvalidTimeRange("end must not be earlier than start")
    return start_ms, end_ms


def encode_cursor(timestamp_ms: int, event_id: int) -> str:
    raw = f"{timestamp_ms}:{event_id}".encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[int, int]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        ts, event_id = base64.urlsafe_b64decode(padded.encode()).decode().split(":")
        return int(ts), int(event_id)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidCursor("Malformed cursor")


def _apply_filters(query, project_id: int, filters: EventFilters, start_ms: int | None, end_ms: int | None):
    query = query.where(LogEvent.project_id == project_id)
    if start_ms is not None:
        query = query.where(LogEvent.timestamp_ms >= start_ms)
    if end_ms is not None:
        query = query.where(LogEvent.timestamp_ms <= end_ms)
    if filters.log_file_id is not None:
        query = query.where(LogEvent.log_file_id == filters.log_file_id)
    if filters.event_name:
        query = query.where(LogEvent.event_name == filters.event_name)
    if filters.level is not None:
        query = query.where(LogEvent.level == filters.level)
    if filters.level_gte is not None:
        query = query.where(LogEvent.level >= filters.level_gte)
    if filters.level_lte is not None:
        query = query.where(LogEvent.level <= filters.level_lte)
    for name in ("stage", "op", "result"):
        value = getattr(filters, name)
        if value:
            query = query.where(getattr(LogEvent, name) == value.strip().lower())
    for name in ID_FILTERS:
        value = getattr(filters, name)
        if value:
            query = query.where(getattr(LogEvent, name) == value.strip())
    if filters.msg_contains:
        query = query.where(LogEvent.msg_text.ilike(f"%{filters.msg_contains}%"))
    if filters.q:
        pattern = f"%{filters.q}%"
        query = query.where(or_(*(col.ilike(pattern) for col in FREE_TEXT_COLUMNS)))
    if filters.exclude_markers:
        query = query.where(LogEvent.event_name != PARSER_ERROR_EVENT)
    return query


def search_events(
    db: Session,
    project_id: int,
    filters: EventFilters,
    start_ms: int | None = None,
    end_ms: int | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
    cursor: str | None = None,
    direction: str = "desc",
) -> tuple[list[LogEvent], str | None]:
    """Keyset page of events ordered by ``(timestamp_ms, id)``; returns ``(items, next_cursor)``."""
    if direction not in ("asc", "desc"):
        raise ApiError("direction must be asc or desc", code="INVALID_DIRECTION")
    limit = min(max(int(limit), 1), MAX_SEARCH_LIMIT)

    query = _apply_filters(select(LogEvent), project_id, filters, start_ms, end_ms)
    if cursor:
        c_ts, c_id = decode_cursor(cursor)
        if direction == "desc":
            query = query.where(or_(
                LogEvent.timestamp_ms < c_ts,
                and_(LogEvent.timestamp_ms == c_ts, LogEvent.id < c_id),
            ))
        else:
            query = query.where(or_(
                LogEvent.timestamp_ms > c_ts,
                and_(LogEvent.timestamp_ms == c_ts, LogEvent.id > c_id),
            ))

    if direction == "desc":
        query = query.order_by(LogEvent.timestamp_ms.desc(), LogEvent.id.desc())
    else:
        query = query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())

    rows = db.execute(query.limit(limit + 1)).scalars().all()
    has_more = len(rows) > limit
    items = list(rows[:limit])
    next_cursor = encode_cursor(items[-1].timestamp_ms, items[-1].id) if has_more and items else None
    return items, next_cursor


def get_event(db: Session, project_id: int, event_id: int) -> LogEvent:
    event = db.get(LogEvent, event_id)
    if event is None or event.project_id != project_id:
        raise NotFound("Event not found", code="EVENT_NOT_FOUND")
    return event


def event_context(
    db: Session, project_id: int, event_id: int, before: int = DEFAULT_CONTEXT, after: int = DEFAULT_CONTEXT
) -> dict[str, Any]:
    """The event plus up to ``before``/``after`` neighbours from the same log file."""
    event = get_event(db, project_id, event_id)
    before = min(max(int(before), 0), MAX_CONTEXT)
    after = min(max(int(after), 0), MAX_CONTEXT)

    same_file = LogEvent.log_file_id == event.log_file_id
    earlier = db.execute(
        select(LogEvent)
        .where(same_file, or_(
            LogEvent.timestamp_ms < event.timestamp_ms,
            and_(LogEvent.timestamp_ms == event.timestamp_ms, LogEvent.id < event.id),
        ))
        .order_by(LogEvent.timestamp_ms.desc(), LogEvent.id.desc())
        .limit(before)
    ).scalars().all() if before else []
    later = db.execute(
        select(LogEvent)
        .where(same_file, or_(
            LogEvent.timestamp_ms > event.timestamp_ms,
            and_(LogEvent.timestamp_ms == event.timestamp_ms, LogEvent.id > event.id),
        ))
        .order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
        .limit(after)
    ).scalars().all() if after else []

    return {"event": event, "before": list(reversed(earlier)), "after": list(later)}


def tracking_values(
    db: Session,
    project_id: int,
    field: str,
    start_ms: int | None = None,
    end_ms: int | None = None,
    prefix: str | None = None,
    limit: int = DEFAULT_LOOKUP_LIMIT,
) -> list[dict[str, Any]]:
    """Distinct values of one tracking column with their event counts, most frequent first."""
    if field not in TRACKING_FIELD_NAMES:
        raise ApiError(f"Unknown tracking field: {field}", code="INVALID_FIELD")
    column = getattr(LogEvent, field)
    limit = min(max(int(limit), 1), MAX_LOOKUP_LIMIT)

    query = select(column, func.count(LogEvent.id).label("count")).where(
        LogEvent.project_id == project_id, column.is_not(None)
    )
    if start_ms is not None:
        query = query.where(LogEvent.timestamp_ms >= start_ms)
    if end_ms is not None:
        query = query.where(LogEvent.timestamp_ms <= end_ms)
    if prefix:
        query = query.where(column.like(f"{prefix}%"))
    rows = db.execute(
        query.group_by(column).order_by(func.count(LogEvent.id).desc(), column).limit(limit)
    ).all()
    return [{"value": value, "count": count} for value, count in rows]
