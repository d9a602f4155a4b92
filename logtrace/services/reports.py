import json
import logging
from collections import Counter
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.core.errors import ApiError
from logtrace.models.analysis_report import AnalysisReport, ReportType
from logtrace.models.device_session import DeviceSession
from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT

logger = logging.getLogger(__name__)

DEFAULT_REPORT_LIMIT = 20
MAX_REPORT_LIMIT = 100


def _session_content(session: DeviceSession | None) -> dict[str, Any] | None:
    if session is None:
        return None
    return {
        "id": session.id,
        "project_id": session.project_id,
        "link_code": session.link_code,
        "device_mac": session.device_mac,
        "start_time_ms": session.start_time_ms,
        "end_time_ms": session.end_time_ms,
        "duration_ms": session.duration_ms,
        "status": session.status,
        "outcome": session.outcome,
        "event_count": session.event_count,
        "error_count": session.error_count,
        "command_count": session.command_count,
        "scan_start_ms": session.scan_start_ms,
        "pair_start_ms": session.pair_start_ms,
        "connect_start_ms": session.connect_start_ms,
        "connected_ms": session.connected_ms,
        "disconnect_ms": session.disconnect_ms,
        "sdk_version": session.sdk_version,
        "app_id": session.app_id,
        "terminal_info": session.terminal_info,
        "created_at": session.created_at.isoformat() if session.created_at else None,
    }


def build_session_report(db: Session, project_id: int, link_code: str) -> tuple[dict[str, Any], str]:
    session = db.execute(
        select(DeviceSession).where(
            DeviceSession.project_id == project_id, DeviceSession.link_code == link_code
        )
    ).scalar_one_or_none()
    events = db.execute(
        select(LogEvent)
        .where(LogEvent.project_id == project_id, LogEvent.link_code == link_code)
        .order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
    ).scalars().all()

    errors = [e for e in events if e.level >= 4]
    request_ids = {e.request_id for e in events if e.request_id}
    content = {
        "session": _session_content(session),
        "event_count": len(events),
        "error_count": len(errors),
        "command_count": len(request_ids),
        "timeline": [
            {
                "id": e.id,
                "event_name": e.event_name,
                "level": e.level,
                "timestamp_ms": e.timestamp_ms,
                "error_code": e.error_code,
            }
            for e in events[:100]
        ],
        "errors": [
            {"id": e.id, "event_name": e.event_name, "timestamp_ms": e.timestamp_ms, "error_code": e.error_code}
            for e in errors[:20]
        ],
    }

    duration = f"{session.duration_ms / 1000:.1f}s" if session and session.duration_ms else "unknown"
    status = session.status if session else "unknown"
    summary = (
        f"Session {link_code}: {len(events)} events, {len(errors)} errors, "
        f"{len(request_ids)} commands. Duration: {duration}. Status: {status}."
    )
    return content, summary


def build_error_report(
    db: Session, project_id: int, start_ms: int, end_ms: int, device_mac: str | None = None
) -> tuple[dict[str, Any], str]:
    query = select(LogEvent).where(
        LogEvent.project_id == project_id,
        LogEvent.timestamp_ms >= start_ms,
        LogEvent.timestamp_ms <= end_ms,
        LogEvent.level >= 3,
        LogEvent.event_name != PARSER_ERROR_EVENT,
    )
    if device_mac:
        query = query.where(LogEvent.device_mac == device_mac)
    events = db.execute(query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())).scalars().all()

    by_code = Counter(e.error_code or "UNKNOWN" for e in events)
    by_name = Counter(e.event_name for e in events)
    by_level = Counter(e.level for e in events)
    sessions = {e.link_code for e in events if e.link_code}
    devices = {e.device_mac for e in events if e.device_mac}

    content = {
        "total_errors": len(events),
        "by_error_code": [{"code": c, "count": n} for c, n in by_code.most_common()],
        "by_event_name": [{"name": c, "count": n} for c, n in by_name.most_common(20)],
        "by_level": [{"level": lvl, "count": n} for lvl, n in sorted(by_level.items(), reverse=True)],
        "affected_sessions_count": len(sessions),
        "affected_devices_count": len(devices),
        "sample_errors": [
            {
                "id": e.id,
                "event_name": e.event_name,
                "level": e.level,
                "timestamp_ms": e.timestamp_ms,
                "error_code": e.error_code,
            }
            for e in events[:50]
        ],
    }

    top = by_code.most_common(1)
    top_code, top_count = top[0] if top else ("N/A", 0)
    summary = (
        f"Error Distribution Report: {len(events)} total errors. "
        f"Top error: {top_code} ({top_count} occurrences). "
        f"Affected {len(sessions)} sessions and {len(devices)} devices."
    )
    return content, summary


def generate_report(
    db: Session,
    project_id: int,
    report_type: str,
    title: str | None = None,
    link_code: str | None = None,
    device_mac: str | None = None,
    start_ms: int | None = None,
    end_ms: int | None = None,
    created_by: str | None = None,
) -> AnalysisReport:
    source = {
        "link_code": link_code,
        "device_mac": device_mac,
        "start_ms": start_ms,
        "end_ms": end_ms,
    }
    if report_type == ReportType.session_analysis.value:
        if not link_code:
            raise ApiError("link_code is required for session_analysis report", code="LINK_CODE_REQUIRED")
        content, summary = build_session_report(db, project_id, link_code)
    elif report_type == ReportType.error_distribution.value:
        if start_ms is None or end_ms is None:
            raise ApiError(
                "start_time and end_time are required for error_distribution report",
                code="TIME_RANGE_REQUIRED",
            )
        content, summary = build_error_report(db, project_id, start_ms, end_ms, device_mac)
    else:
        raise ApiError(f"Report type {report_type} is not supported", code="UNSUPPORTED_REPORT_TYPE")

    report = AnalysisReport(
        project_id=project_id,
        title=title or f"{report_type} - {datetime.utcnow().isoformat()}",
        report_type=report_type,
        content=content,
        source_data=source,
        summary=summary,
        created_by=created_by,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info("Generated %s report %d", report_type, report.id, extra={"project_id": project_id})
    return report


def list_reports(
    db: Session, project_id: int, report_type: str | None = None, limit: int = DEFAULT_REPORT_LIMIT
) -> list[AnalysisReport]:
    query = select(AnalysisReport).where(AnalysisReport.project_id == project_id)
    if report_type:
        query = query.where(AnalysisReport.report_type == report_type)
    limit = min(max(limit, 1), MAX_REPORT_LIMIT)
    query = query.order_by(AnalysisReport.created_at.desc(), AnalysisReport.id.desc()).limit(limit)
    return list(db.execute(query).scalars().all())


def get_report(db: Session, project_id: int, report_id: int) -> AnalysisReport | None:
    return db.execute(
        select(AnalysisReport).where(
            AnalysisReport.id == report_id, AnalysisReport.project_id == project_id
        )
    ).scalar_one_or_none()


def report_to_markdown(report: AnalysisReport) -> str:
    created = report.created_at.isoformat() if report.created_at else "unknown"
    return (
        f"# {report.title}\n\n"
        f"**Type:** {report.report_type}\n"
        f"**Created:** {created}\n"
        f"**Created By:** {report.created_by or 'Unknown'}\n\n"
        f"## Summary\n\n{report.summary or 'No summary available.'}\n\n"
        f"## Details\n\n```json\n{json.dumps(report.content, indent=2, ensure_ascii=False)}\n```\n"
    )
