import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logtrace.core.errors import NotFound
from logtrace.models.log_event import LogEvent
from logtrace.models.log_file import LogFile
from logtrace.services.ble import msg_preview
from logtrace.services.commands import clamp

logger = logging.getLogger(__name__)

TRACE_FIELDS = ("link_code", "request_id", "attempt_id", "device_mac", "device_sn")
DEFAULT_TRACE_LIMIT = 500
MAX_TRACE_LIMIT = 2000
# a request id names one command; its chain is short
REQUEST_TRACE_LIMIT = 100


def assert_file_in_project(db: Session, project_id: int, log_file_id: int) -> LogFile:
    lf = db.get(LogFile, log_file_id)
    if lf is None or lf.project_id != project_id:
        raise NotFound("Log file not found", code="LOG_FILE_NOT_FOUND")
    return lf


def _scoped(query, project_id: int, log_file_id: int | None, start_ms: int | None, end_ms: int | None):
    query = query.where(LogEvent.project_id == project_id)
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    if start_ms is not None:
        query = query.where(LogEvent.timestamp_ms >= start_ms)
    if end_ms is not None:
        query = query.where(LogEvent.timestamp_ms <= end_ms)
    return query


def _trace_item(event: LogEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "log_file_id": event.log_file_id,
        "event_name": event.event_name,
        "level": event.level,
        "timestamp_ms": event.timestamp_ms,
        "sdk_version": event.sdk_version,
        "app_id": event.app_id,
        "thread_name": event.thread_name,
        "device_mac": event.device_mac,
        "device_sn": event.device_sn,
        "link_code": event.link_code,
        "request_id": event.request_id,
        "attempt_id": event.attempt_id,
        "error_code": event.error_code,
        "msg": msg_preview(event.msg_json),
    }


def trace_events(
    db: Session,
    project_id: int,
    field: str,
    value: str,
    log_file_id: int | None = None,
    start_ms: int | None = None,
    end_ms: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Every event carrying ``field == value`` in time order."""
    if field not in TRACE_FIELDS:
        raise ValueError(f"Cannot trace by {field}")
    if log_file_id is not None:
        assert_file_in_project(db, project_id, log_file_id)
    if field == "request_id":
        limit = REQUEST_TRACE_LIMIT
    else:
        limit = clamp(limit, DEFAULT_TRACE_LIMIT, 1, MAX_TRACE_LIMIT)

    query = _scoped(select(LogEvent), project_id, log_file_id, start_ms, end_ms)
    events = db.execute(
        query.where(getattr(LogEvent, field) == value)
        .order_by(LogEvent.timestamp_ms, LogEvent.id)
        .limit(limit)
    ).scalars().all()
    logger.info("Traced %s: %d events", field, len(events), extra={"project_id": project_id})
    return {field: value, "count": len(events), "items": [_trace_item(e) for e in events]}


def _grouped(db: Session, query, key_column) -> list[tuple]:
    return db.execute(
        query.where(key_column.is_not(None))
        .group_by(key_column)
        .order_by(func.min(LogEvent.timestamp_ms), key_column)
    ).all()


def link_code_devices(
    db: Session, project_id: int, link_code: str, log_file_id: int | None = None,
) -> dict[str, Any]:
    """Device MACs seen under one link code with their first and last sighting."""
    if log_file_id is not None:
        assert_file_in_project(db, project_id, log_file_id)
    query = _scoped(
        select(LogEvent.device_mac, func.count(LogEvent.id), func.min(LogEvent.timestamp_ms),
               func.max(LogEvent.timestamp_ms)),
        project_id, log_file_id, None, None,
    ).where(LogEvent.link_code == link_code)
    rows = _grouped(db, query, LogEvent.device_mac)
    return {
        "link_code": link_code,
        "devices": [
            {"device_mac": mac, "event_count": count, "first_seen_ms": first, "last_seen_ms": last}
            for mac, count, first, last in rows
        ],
    }


def device_sessions(
    db: Session,
    project_id: int,
    device_mac: str,
    start_ms: int,
    end_ms: int,
    log_file_id: int | None = None,
) -> dict[str, Any]:
    """Link codes one device went through inside the window."""
    if log_file_id is not None:
        assert_file_in_project(db, project_id, log_file_id)
    query = _scoped(
        select(LogEvent.link_code, func.count(LogEvent.id), func.min(LogEvent.timestamp_ms),
               func.max(LogEvent.timestamp_ms)),
        project_id, log_file_id, start_ms, end_ms,
    ).where(LogEvent.device_mac == device_mac)
    rows = _grouped(db, query, LogEvent.link_code)
    return {
        "device_mac": device_mac,
        "sessions": [
            {"link_code": code, "event_count": count, "start_time_ms": first, "end_time_ms": last}
            for code, count, first, last in rows
        ],
    }
