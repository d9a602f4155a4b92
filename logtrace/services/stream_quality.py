"""Scores data-stream session summaries emitted by the SDK.

Each ``DATA_STREAM_SESSION_SUMMARY`` event describes one closed data stream.
A session starts at 100 and loses points for missing identifiers, bad close
reasons, buffered out-of-order packets, pending callbacks and persistence lag.
"""
import json
import logging
import math
import re
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent

logger = logging.getLogger(__name__)

STREAM_SUMMARY_CODE = "DATA_STREAM_SESSION_SUMMARY"
WARN_BELOW = 80
BAD_BELOW = 60
TOP_LIMIT = 10
SESSIONS_LIMIT = 20

REASON_PENALTIES = {
    "disconnectduetodataissue": 30,
    "forcereleasefetchsession": 20,
    "markdisconnected": 10,
}

_KV_RE = re.compile(r"(?:^|[\s,;])([A-Za-z_][A-Za-z0-9_]*)\s*[:=]\s*([^\s,;]+)")

NUMBER_FIELDS = {
    "raw_start_index": ("rawStartIndex", "raw_start_index"),
    "next_expected_raw": ("nextExpectedRaw", "next_expected_raw"),
    "last_raw": ("lastRaw", "last_raw"),
    "buffered_out_of_order_count": ("bufferedOutOfOrderCount", "buffered_out_of_order_count"),
    "persisted_max": ("persistedMax", "persisted_max"),
    "pending_callbacks": ("pendingCallbacks", "pending_callbacks"),
    "session_start_index": ("sessionStartIndex", "session_start_index"),
    "session_start_at_ms": ("sessionStartAtMs", "session_start_at_ms"),
    "session_elapsed_ms": ("sessionElapsedMs", "session_elapsed_ms"),
}
REASON_KEYS = ("reason", "closeReason", "sessionReason", "session_close_reason", "session_reason")


def _as_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return str(int(value))
    return None


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value) if float(value).is_integer() else value
    return None


def parse_key_values(text: str) -> dict[str, str]:
    """``key=value`` / ``key: value`` tokens from free text; later keys win."""
    return {m.group(1): m.group(2).strip() for m in _KV_RE.finditer(text or "")}


def message_text(msg: Any) -> str:
    if isinstance(msg, str):
        return msg
    if isinstance(msg, dict):
        for key in ("data", "message", "msg", "text"):
            text = _as_text(msg.get(key))
            if text:
                return text
        return json.dumps(msg, default=str)
    if msg is None or isinstance(msg, (list, tuple)):
        return ""
    return str(msg)


def extract_stream_fields(msg: Any) -> dict[str, Any]:
    """Stream counters from the structured payload, falling back to key=value text."""
    obj = msg if isinstance(msg, dict) else {}
    tokens = parse_key_values(message_text(msg))

    def pick(keys, coerce):
        for source in (obj, tokens):
            for key in keys:
                value = coerce(source.get(key))
                if value is not None:
                    return value
        return None

    fields = {name: pick(keys, _as_number) for name, keys in NUMBER_FIELDS.items()}
    fields["reason"] = pick(REASON_KEYS, _as_text)
    return fields


def score_session(
    device_sn: str | None,
    link_code: str | None,
    request_id: str | None,
    fields: dict[str, Any],
) -> int:
    score = 100
    if not device_sn:
        score -= 20
    if not link_code:
        score -= 15
    if not request_id:
        score -= 15
    if not fields.get("reason"):
        score -= 10
    if fields.get("session_start_index") is None:
        score -= 5
    if fields.get("session_start_at_ms") is None:
        score -= 5

    score -= REASON_PENALTIES.get((fields.get("reason") or "").lower(), 0)

    out_of_order = fields.get("buffered_out_of_order_count") or 0
    if out_of_order > 0:
        score -= min(30, int(out_of_order) * 2)

    pending = fields.get("pending_callbacks") or 0
    if pending > 0:
        score -= min(20, int(pending) * 5)

    persisted_max = fields.get("persisted_max")
    if persisted_max is not None:
        lag = None
        if fields.get("last_raw") is not None:
            lag = fields["last_raw"] - persisted_max
        elif fields.get("next_expected_raw") is not None:
            lag = fields["next_expected_raw"] - 1 - persisted_max
        if lag is not None and lag > 0:
            score -= min(25, int(lag))

    return min(max(int(score), 0), 100)


def classify_quality(score: int) -> str:
    if score < BAD_BELOW:
        return "bad"
    if score < WARN_BELOW:
        return "warn"
    return "good"


def _top(counter: Counter, key_name: str) -> list[dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{key_name: key, "total": total} for key, total in ranked[:TOP_LIMIT]]


def build_stream_quality_report(events) -> dict[str, Any]:
    summary = {
        "total": 0,
        "missing_device_sn": 0,
        "missing_link_code": 0,
        "missing_request_id": 0,
        "missing_reason": 0,
        "missing_session_start_index": 0,
        "missing_session_start_at_ms": 0,
        "score_avg": None,
        "quality_good": 0,
        "quality_warn": 0,
        "quality_bad": 0,
        "threshold_warn_below": WARN_BELOW,
        "threshold_bad_below": BAD_BELOW,
    }
    by_reason: Counter = Counter()
    by_device: Counter = Counter()
    by_link: Counter = Counter()
    by_request: Counter = Counter()
    sessions = []
    score_sum = 0

    for event in events:
        summary["total"] += 1
        sn = (event.device_sn or "").strip() or None
        link = (event.link_code or "").strip() or None
        request_id = (event.request_id or "").strip() or None
        fields = extract_stream_fields(event.msg_json)

        for value, counter, missing in (
            (sn, by_device, "missing_device_sn"),
            (link, by_link, "missing_link_code"),
            (request_id, by_request, "missing_request_id"),
            (fields["reason"], by_reason, "missing_reason"),
        ):
            if value:
                counter[value] += 1
            else:
                summary[missing] += 1
        if fields["session_start_index"] is None:
            summary["missing_session_start_index"] += 1
        if fields["session_start_at_ms"] is None:
            summary["missing_session_start_at_ms"] += 1

        score = score_session(sn, link, request_id, fields)
        quality = classify_quality(score)
        score_sum += score
        summary[f"quality_{quality}"] += 1
        sessions.append({
            "timestamp_ms": event.timestamp_ms,
            "device_sn": sn,
            "link_code": link,
            "request_id": request_id,
            "score": score,
            "quality": quality,
            **fields,
        })

    if summary["total"]:
        summary["score_avg"] = round(score_sum / summary["total"])
    sessions.sort(key=lambda s: -s["timestamp_ms"])
    return {
        "summary": summary,
        "by_reason": _top(by_reason, "reason"),
        "by_device": _top(by_device, "device_sn"),
        "by_link_code": _top(by_link, "link_code"),
        "by_request_id": _top(by_request, "request_id"),
        "sessions": sessions[:SESSIONS_LIMIT],
    }


def analyze_stream_quality(db: Session, log_file_id: int) -> dict[str, Any]:
    events = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.error_code == STREAM_SUMMARY_CODE)
        .order_by(LogEvent.timestamp_ms, LogEvent.id)
    ).scalars().all()
    report = build_stream_quality_report(events)
    logger.info(
        "Stream quality scored for %d sessions", report["summary"]["total"],
        extra={"log_file_id": log_file_id},
    )
    return report
