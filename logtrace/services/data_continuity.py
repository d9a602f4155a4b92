"""Counts data-stream continuity problems reported through error codes.

Out-of-order and duplicate packets are both ordering problems and roll up into
``order_broken``; they are also counted separately so the two can be told apart.
"""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent

logger = logging.getLogger(__name__)

OUT_OF_ORDER_CODE = "DATA_STREAM_OUT_OF_ORDER_BUFFERED"
DUPLICATE_CODE = "DATA_STREAM_DUPLICATE_DROPPED"

ISSUE_KINDS = {
    "DATA_STREAM_ORDER_BROKEN": "order_broken",
    OUT_OF_ORDER_CODE: "order_broken",
    DUPLICATE_CODE: "order_broken",
    "DATA_PERSIST_TIMEOUT": "persist_timeout",
    "V3_RT_BUFFER_DROP": "rt_buffer_drop",
}
TOP_LIMIT = 10


def _counters() -> dict[str, int]:
    return {
        "total": 0,
        "order_broken": 0,
        "out_of_order_buffered": 0,
        "duplicate_dropped": 0,
        "persist_timeout": 0,
        "rt_buffer_drop": 0,
    }


def _bump(counters: dict[str, int], kind: str, error_code: str) -> None:
    counters["total"] += 1
    counters[kind] += 1
    if error_code == OUT_OF_ORDER_CODE:
        counters["out_of_order_buffered"] += 1
    elif error_code == DUPLICATE_CODE:
        counters["duplicate_dropped"] += 1


def _ranked(groups: dict[str, dict[str, int]], key_name: str, limit: int) -> list[dict[str, Any]]:
    # stable: equal totals keep first-seen order
    rows = sorted(groups.items(), key=lambda kv: -kv[1]["total"])
    return [{key_name: key, **counters} for key, counters in rows[:limit]]


def build_data_continuity_report(events, top_limit: int = TOP_LIMIT) -> dict[str, Any]:
    summary = {
        **_counters(),
        "issues_missing_device_sn": 0,
        "issues_missing_link_code": 0,
        "issues_missing_request_id": 0,
    }
    groups: dict[str, dict[str, dict[str, int]]] = {"device_sn": {}, "link_code": {}, "request_id": {}}

    for event in events:
        kind = ISSUE_KINDS.get(event.error_code)
        if kind is None:
            continue
        _bump(summary, kind, event.error_code)

        for field, by_value in groups.items():
            value = (getattr(event, field) or "").strip()
            if not value:
                summary[f"issues_missing_{field}"] += 1
                continue
            _bump(by_value.setdefault(value, _counters()), kind, event.error_code)

    return {
        "summary": summary,
        "by_device": _ranked(groups["device_sn"], "device_sn", top_limit),
        "by_link_code": _ranked(groups["link_code"], "link_code", top_limit),
        "by_request_id": _ranked(groups["request_id"], "request_id", top_limit),
    }


def analyze_data_continuity(db: Session, log_file_id: int) -> dict[str, Any]:
    events = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.error_code.in_(list(ISSUE_KINDS)))
        .order_by(LogEvent.timestamp_ms, LogEvent.id)
    ).scalars().all()
    report = build_data_continuity_report(events)
    logger.info(
        "Data continuity checked: %d issues", report["summary"]["total"],
        extra={"log_file_id": log_file_id},
    )
    return report
