"""One-call health check of an ingested log file.

Combines the file's ingestion counters, its event mix and the per-file quality
reports, and turns the worst of them into a short list of findings.
"""
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.models.log_file import LogFile, LogFileStatus
from logtrace.services.backend_quality import analyze_backend_quality
from logtrace.services.data_continuity import analyze_data_continuity
from logtrace.services.stream_quality import analyze_stream_quality

logger = logging.getLogger(__name__)

TOP_LIMIT = 10
COVERAGE_FIELDS = ("link_code", "device_sn", "device_mac", "request_id")


def _finding(severity: str, code: str, message: str) -> dict[str, str]:
    return {"severity": severity, "code": code, "message": message}


def _top(db: Session, conditions, column) -> list[dict[str, Any]]:
    count = func.count(LogEvent.id)
    rows = db.execute(
        select(column, count).where(*conditions, column.is_not(None))
        .group_by(column).order_by(count.desc(), column).limit(TOP_LIMIT)
    ).all()
    return [{"value": value, "count": n} for value, n in rows]


def _event_profile(db: Session, log_file_id: int) -> dict[str, Any]:
    conditions = (LogEvent.log_file_id == log_file_id, LogEvent.event_name != PARSER_ERROR_EVENT)
    total, first_ms, last_ms = db.execute(
        select(func.count(LogEvent.id), func.min(LogEvent.timestamp_ms), func.max(LogEvent.timestamp_ms))
        .where(*conditions)
    ).one()
    levels = dict(db.execute(
        select(LogEvent.level, func.count(LogEvent.id)).where(*conditions).group_by(LogEvent.level)
    ).all())
    coverage = {}
    for field in COVERAGE_FIELDS:
        column = getattr(LogEvent, field)
        with_value = db.execute(select(func.count(column)).where(*conditions)).scalar_one()
        coverage[field] = round(with_value / total, 4) if total else None
    return {
        "total": total,
        "first_timestamp_ms": first_ms,
        "last_timestamp_ms": last_ms,
        "by_level": {str(level): n for level, n in sorted(levels.items())},
        "top_events": _top(db, conditions, LogEvent.event_name),
        "top_error_codes": _top(db, conditions, LogEvent.error_code),
        "tracking_coverage": coverage,
    }


def _parser_errors(db: Session, log_file_id: int) -> dict[str, Any]:
    markers = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.event_name == PARSER_ERROR_EVENT)
        .order_by(LogEvent.timestamp_ms.desc(), LogEvent.id.desc())
    ).scalars().all()
    return {"count": len(markers), "items": [m.msg_json for m in markers]}


def _findings(lf: LogFile, profile, stream, continuity, backend) -> list[dict[str, str]]:
    findings = []
    if lf.status == LogFileStatus.failed:
        findings.append(_finding("error", "INGESTION_FAILED", lf.error or "Ingestion failed"))
    elif lf.status != LogFileStatus.parsed:
        findings.append(_finding("info", "NOT_PARSED", f"File is {lf.status}; results may be incomplete"))
    if lf.decrypt_blocks_failed:
        findings.append(_finding(
            "warning", "PARTIAL_DECRYPT",
            f"{lf.decrypt_blocks_failed}/{lf.decrypt_blocks_total} encrypted blocks could not be read",
        ))
    if lf.invalid_lines:
        findings.append(_finding("warning", "INVALID_LINES", f"{lf.invalid_lines} line(s) could not be parsed"))
    if lf.status == LogFileStatus.parsed and not profile["total"]:
        findings.append(_finding("warning", "NO_EVENTS", "No events were parsed from this file"))
    if profile["tracking_coverage"]["link_code"] == 0:
        findings.append(_finding("info", "NO_LINK_CODE", "No event carries a link code; sessions cannot be built"))

    if stream["summary"]["quality_bad"]:
        findings.append(_finding(
            "warning", "STREAM_QUALITY_BAD", f"{stream['summary']['quality_bad']} data stream(s) scored bad",
        ))
    if continuity["summary"]["total"]:
        findings.append(_finding(
            "warning", "DATA_CONTINUITY", f"{continuity['summary']['total']} data continuity issue(s)",
        ))
    http, mqtt = backend["summary"]["http"], backend["summary"]["mqtt"]
    if http["failed"]:
        findings.append(_finding("warning", "HTTP_FAILED", f"{http['failed']} HTTP request(s) failed"))
    if mqtt["ack_timeout"]:
        findings.append(_finding("warning", "MQTT_ACK_TIMEOUT", f"{mqtt['ack_timeout']} MQTT ack timeout(s)"))
    return findings


def diagnose_log_file(db: Session, lf: LogFile) -> dict[str, Any]:
    profile = _event_profile(db, lf.id)
    parser_errors = _parser_errors(db, lf.id)
    stream = analyze_stream_quality(db, lf.id)
    continuity = analyze_data_continuity(db, lf.id)
    backend = analyze_backend_quality(db, lf.id)
    findings = _findings(lf, profile, stream, continuity, backend)
    logger.info("Diagnosed log file: %d findings", len(findings), extra={"log_file_id": lf.id})
    return {
        "log_file": {
            "id": lf.id,
            "filename": lf.filename,
            "status": lf.status,
            "encrypted": lf.encrypted,
            "total_lines": lf.total_lines,
            "event_count": lf.event_count,
            "error_count": lf.error_count,
            "invalid_lines": lf.invalid_lines,
            "header_lines": lf.header_lines,
            "decrypt_blocks_total": lf.decrypt_blocks_total,
            "decrypt_blocks_failed": lf.decrypt_blocks_failed,
            "attempts": lf.attempts,
            "error": lf.error,
        },
        "events": profile,
        "parser_errors": parser_errors,
        "stream_quality": stream["summary"],
        "data_continuity": continuity["summary"],
        "backend_quality": backend["summary"],
        "findings": findings,
    }
