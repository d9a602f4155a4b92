import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.models.log_file import LogFile, LogFileStatus
from logtrace.services.decoder import DecodeResult, decode_buffer
from logtrace.services.parser import ParseResult, ParsedEvent, parse_text
from logtrace.services.tracking import backfill_tracking

logger = logging.getLogger(__name__)
BATCH_SIZE = 2000


@dataclass
class IngestionSummary:
    log_file_id: int
    project_id: int
    event_count: int
    error_count: int
    invalid_lines: int
    link_codes: list[str] = field(default_factory=list)


def msg_to_text(msg: Any) -> str | None:
    if msg is None:
        return None
    if isinstance(msg, str):
        return msg
    return json.dumps(msg, ensure_ascii=False, default=str)


def _resolve_path(stored_path: str) -> Path:
    path = Path(stored_path)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _to_row(lf: LogFile, parsed: ParsedEvent) -> LogEvent:
    t = parsed.tracking
    return LogEvent(
        log_file_id=lf.id,
        project_id=lf.project_id,
        line_number=parsed.line_number,
        timestamp_ms=parsed.timestamp_ms,
        level=parsed.level,
        event_name=parsed.event_name,
        sdk_version=parsed.sdk_version,
        app_id=parsed.app_id,
        terminal_info=parsed.terminal_info,
        thread_name=parsed.thread_name,
        thread_id=parsed.thread_id,
        is_main_thread=parsed.is_main_thread,
        msg_json=parsed.msg,
        msg_text=msg_to_text(parsed.msg),
        raw_line=parsed.raw_line,
        device_sn=t.device_sn,
        device_mac=t.device_mac,
        link_code=t.link_code,
        request_id=t.request_id,
        attempt_id=t.attempt_id,
        error_code=t.error_code,
        reason_code=t.reason_code,
        stage=t.stage,
        op=t.op,
        result=t.result,
    )


def build_marker_events(lf: LogFile, parsed: ParseResult, decoded: DecodeResult) -> list[LogEvent]:
    """PARSER_ERROR rows describing what was dropped while reading the file."""
    marker_ts = parsed.events[0].timestamp_ms if parsed.events else _now_ms()
    markers: list[LogEvent] = []

    def marker(level: int, payload: dict) -> LogEvent:
        return LogEvent(
            log_file_id=lf.id,
            project_id=lf.project_id,
            line_number=None,
            timestamp_ms=marker_ts,
            level=level,
            event_name=PARSER_ERROR_EVENT,
            msg_json=payload,
            msg_text=msg_to_text(payload),
        )

    if decoded.encrypted and decoded.blocks_failed:
        markers.append(marker(3, {
            "message": (
                f"Container decrypt partially failed ({decoded.blocks_failed}/"
                f"{decoded.blocks_total} blocks). Parsed output may be incomplete."
            ),
            "blocks_total": decoded.blocks_total,
            "blocks_failed": decoded.blocks_failed,
        }))

    if parsed.invalid_lines:
        markers.append(marker(4, {
            "message": f"{parsed.invalid_lines} line(s) could not be parsed",
            "invalid_lines": parsed.invalid_lines,
            "total_lines": parsed.total_lines,
            "samples": [
                {"line_number": s.line_number, "reason": s.reason}
                for s in parsed.invalid_samples
            ],
        }))
    return markers


def delete_file_events(db: Session, log_file_id: int) -> int:
    res = db.execute(delete(LogEvent).where(LogEvent.log_file_id == log_file_id))
    db.commit()
    return res.rowcount or 0


def process_log_file(db: Session, log_file_id: int, attempt: int = 1) -> IngestionSummary | None:
    """Decode, parse and persist one uploaded file end to end.

    Existing events for the file are removed first so a retry never
    duplicates rows. On failure the partial rows of this attempt are removed
    and the exception propagates to the caller, which owns retry policy.
    """
    log_extra = {"log_file_id": log_file_id, "attempt": attempt}
    logger.info("Ingestion started for log_file_id=%d", log_file_id, extra=log_extra)
    lf = db.get(LogFile, log_file_id)
    if not lf:
        logger.warning("Log file %d vanished before ingestion", log_file_id, extra=log_extra)
        return None

    lf.status = LogFileStatus.processing
    lf.attempts = attempt
    lf.error = None
    db.commit()

    try:
        delete_file_events(db, lf.id)

        buffer = _resolve_path(lf.stored_path).read_bytes()
        decoded = decode_buffer(buffer)
        parsed = parse_text(decoded.text)

        tracking = backfill_tracking([e.tracking for e in parsed.events])
        for event, filled in zip(parsed.events, tracking):
            event.tracking = filled

        batch: list[LogEvent] = []
        for event in parsed.events:
            batch.append(_to_row(lf, event))
            if len(batch) >= BATCH_SIZE:
                db.add_all(batch)
                db.commit()
                batch.clear()
        batch.extend(build_marker_events(lf, parsed, decoded))
        if batch:
            db.add_all(batch)
            db.commit()

        lf.encrypted = decoded.encrypted
        lf.decrypt_blocks_total = decoded.blocks_total if decoded.encrypted else None
        lf.decrypt_blocks_failed = decoded.blocks_failed if decoded.encrypted else None
        lf.total_lines = parsed.total_lines
        lf.event_count = parsed.event_count
        lf.error_count = parsed.error_count
        lf.invalid_lines = parsed.invalid_lines
        lf.header_lines = parsed.header_lines
        lf.status = LogFileStatus.parsed
        lf.processed_at = datetime.utcnow()
        db.commit()
    except Exception:
        db.rollback()
        removed = delete_file_events(db, log_file_id)
        logger.warning(
            "Ingestion attempt %d failed for log_file_id=%d, removed %d partial events",
            attempt, log_file_id, removed, extra=log_extra,
        )
        raise

    link_codes = sorted({e.tracking.link_code for e in parsed.events if e.tracking.link_code})
    logger.info(
        "Ingestion complete for log_file_id=%d: %d events, %d invalid lines",
        log_file_id, parsed.event_count, parsed.invalid_lines, extra=log_extra,
    )
    return IngestionSummary(
        log_file_id=lf.id,
        project_id=lf.project_id,
        event_count=parsed.event_count,
        error_count=parsed.error_count,
        invalid_lines=parsed.invalid_lines,
        link_codes=link_codes,
    )


def mark_failed(db: Session, log_file_id: int, error: str) -> None:
    lf = db.get(LogFile, log_file_id)
    if not lf:
        return
    lf.status = LogFileStatus.failed
    lf.error = error
    lf.processed_at = datetime.utcnow()
    db.commit()


def file_link_codes(db: Session, log_file_id: int) -> list[str]:
    rows = db.execute(
        select(LogEvent.link_code)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.link_code.is_not(None))
        .distinct()
    ).scalars().all()
    return sorted(rows)
