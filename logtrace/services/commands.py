import json
import logging
from dataclasses import dataclass, field, asdict
from typing import Any

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent
from logtrace.services.ble import (
    is_ble_connect_start_event,
    is_ble_connect_success_event,
    is_ble_disconnect_event,
)

logger = logging.getLogger(__name__)

DEFAULT_CHAIN_LIMIT = 100
MAX_CHAIN_LIMIT = 1000
EVENTS_PER_CHAIN_FETCH = 10
MAX_EVENTS_PER_CHAIN = 200
SLOWEST_CHAINS = 5

DEFAULT_RECONNECT_WINDOW_MS = 5 * 60_000
MIN_RECONNECT_WINDOW_MS = 1_000
MAX_RECONNECT_WINDOW_MS = 30 * 60_000
DEFAULT_RECONNECT_LIMIT = 50
MAX_RECONNECT_LIMIT = 200
REASON_MAX_CHARS = 120
DISCONNECT_REASON_KEYS = ("reason", "error", "errorCode", "desc", "message", "msg")


@dataclass
class CommandChain:
    request_id: str
    start_ms: int
    end_ms: int
    duration_ms: int = 0
    status: str = "pending"
    event_count: int = 0
    events: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def clamp(value: int | None, default: int, low: int, high: int) -> int:
    if value is None:
        return default
    return min(max(int(value), low), high)


def percentile(sorted_values: list[int], p: float) -> int | None:
    """Nearest-rank percentile."""
    if not sorted_values:
        return None
    return int(np.percentile(np.asarray(sorted_values), p, method="inverted_cdf"))


def _chain_event(event) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_name": event.event_name,
        "timestamp_ms": event.timestamp_ms,
        "level": event.level,
    }


def build_command_chains(events) -> list[CommandChain]:
    """Group time-ordered events by request id into classified chains."""
    chains: dict[str, CommandChain] = {}
    for event in events:
        if not event.request_id:
            continue
        ts = event.timestamp_ms
        chain = chains.get(event.request_id)
        if chain is None:
            chains[event.request_id] = CommandChain(
                request_id=event.request_id,
                start_ms=ts,
                end_ms=ts,
                event_count=1,
                events=[_chain_event(event)],
            )
            continue

        chain.end_ms = ts
        chain.duration_ms = chain.end_ms - chain.start_ms
        chain.event_count += 1
        if len(chain.events) < MAX_EVENTS_PER_CHAIN:
            chain.events.append(_chain_event(event))

        name = event.event_name.upper()
        if event.level >= 4 or event.error_code:
            chain.status = "timeout" if "TIMEOUT" in name else "error"
        elif "SUCCESS" in name or "RESPONSE" in name or "COMPLETE" in name:
            chain.status = "success"

    return sorted(chains.values(), key=lambda c: c.start_ms)


def chain_stats(chains: list[CommandChain]) -> dict[str, Any]:
    durations = sorted(c.duration_ms for c in chains if c.duration_ms and c.duration_ms > 0)
    slowest = sorted(chains, key=lambda c: c.duration_ms or 0, reverse=True)[:SLOWEST_CHAINS]
    return {
        "total": len(chains),
        "success": sum(1 for c in chains if c.status == "success"),
        "timeout": sum(1 for c in chains if c.status == "timeout"),
        "error": sum(1 for c in chains if c.status == "error"),
        "pending": sum(1 for c in chains if c.status == "pending"),
        "avg_duration_ms": round(sum(durations) / len(durations)) if durations else None,
        "p50": percentile(durations, 50),
        "p90": percentile(durations, 90),
        "p99": percentile(durations, 99),
        "slowest": [
            {"request_id": c.request_id, "duration_ms": c.duration_ms, "status": c.status}
            for c in slowest
        ],
    }


def analyze_command_chains(
    db: Session,
    project_id: int,
    start_ms: int,
    end_ms: int,
    device_mac: str | None = None,
    log_file_id: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    limit = clamp(limit, DEFAULT_CHAIN_LIMIT, 1, MAX_CHAIN_LIMIT)
    query = (
        select(LogEvent)
        .where(
            LogEvent.project_id == project_id,
            LogEvent.timestamp_ms >= start_ms,
            LogEvent.timestamp_ms <= end_ms,
            LogEvent.request_id.is_not(None),
        )
    )
    if device_mac:
        query = query.where(LogEvent.device_mac == device_mac)
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    query = query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc()).limit(
        limit * EVENTS_PER_CHAIN_FETCH
    )
    events = db.execute(query).scalars().all()

    chains = build_command_chains(events)
    logger.debug("Built %d command chains from %d events", len(chains), len(events))
    return {
        "chains": [c.to_dict() for c in chains[:limit]],
        "stats": chain_stats(chains),
    }


def extract_disconnect_reason(msg: Any) -> str | None:
    if not msg:
        return None
    if isinstance(msg, str):
        text = msg.strip()
        return text[:REASON_MAX_CHARS] if text else None
    if isinstance(msg, dict):
        for key in DISCONNECT_REASON_KEYS:
            value = msg.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()[:REASON_MAX_CHARS]
        return json.dumps(msg, ensure_ascii=False, default=str)[:REASON_MAX_CHARS]
    return None


def _reconnect_cases(events, window_ms: int) -> list[dict[str, Any]]:
    cases = []
    for i, event in enumerate(events):
        if not is_ble_disconnect_event(event):
            continue
        disconnect_at = event.timestamp_ms
        reason = extract_disconnect_reason(event.msg_json) or event.error_code

        reconnect_id = None
        reconnect_at = None
        attempts = 0
        attempt_ids: list[str] = []
        for nxt in events[i + 1:]:
            if nxt.timestamp_ms - disconnect_at > window_ms:
                break
            if is_ble_disconnect_event(nxt):
                break
            if is_ble_connect_start_event(nxt):
                attempts += 1
                if nxt.attempt_id and nxt.attempt_id not in attempt_ids:
                    attempt_ids.append(nxt.attempt_id)
            if is_ble_connect_success_event(nxt):
                reconnect_id = nxt.id
                reconnect_at = nxt.timestamp_ms
                break

        cases.append({
            "log_file_id": event.log_file_id,
            "disconnect_event_id": event.id,
            "disconnect_at_ms": disconnect_at,
            "reason": reason,
            "reconnect_event_id": reconnect_id,
            "reconnect_at_ms": reconnect_at,
            "reconnect_delay_ms": reconnect_at - disconnect_at if reconnect_at is not None else None,
            "attempts": attempts,
            "attempt_ids": attempt_ids[:10],
        })
    return cases


def _summarize_device(device_key: str, events, window_ms: int) -> dict[str, Any] | None:
    cases = _reconnect_cases(events, window_ms)
    if not cases:
        return None

    delays = sorted(c["reconnect_delay_ms"] for c in cases if c["reconnect_delay_ms"] is not None and c["reconnect_delay_ms"] >= 0)
    attempts = sorted(c["attempts"] for c in cases)
    reconnect_ok = sum(1 for c in cases if c["reconnect_at_ms"] is not None)

    reasons: dict[str, int] = {}
    for c in cases:
        if c["reason"]:
            reasons[c["reason"]] = reasons.get(c["reason"], 0) + 1
    top_reasons = sorted(reasons.items(), key=lambda kv: kv[1], reverse=True)[:5]

    samples = sorted(
        cases,
        key=lambda c: c["reconnect_delay_ms"] if c["reconnect_delay_ms"] is not None else float("inf"),
        reverse=True,
    )[:5]

    link_codes: list[str] = []
    for e in events:
        if e.link_code and e.link_code not in link_codes:
            link_codes.append(e.link_code)

    return {
        "device_key": device_key,
        "device_mac": next((e.device_mac for e in events if e.device_mac), None),
        "device_sn": next((e.device_sn for e in events if e.device_sn), None),
        "link_codes": link_codes,
        "disconnects": len(cases),
        "reconnect_ok": reconnect_ok,
        "reconnect_unresolved": len(cases) - reconnect_ok,
        "reconnect_delay_avg_ms": round(sum(delays) / len(delays)) if delays else None,
        "reconnect_delay_p95_ms": percentile(delays, 95),
        "reconnect_delay_max_ms": delays[-1] if delays else None,
        "attempts_avg": round(sum(attempts) / len(attempts)) if attempts else None,
        "attempts_max": attempts[-1] if attempts else None,
        "top_reasons": [{"reason": r, "count": n} for r, n in top_reasons],
        "samples": samples,
    }


def reconnect_summary(
    db: Session,
    project_id: int,
    start_ms: int,
    end_ms: int,
    device_mac: str | None = None,
    log_file_id: int | None = None,
    limit: int | None = None,
    reconnect_window_ms: int | None = None,
) -> dict[str, Any]:
    """Per-device disconnect to reconnect delays within a window."""
    limit = clamp(limit, DEFAULT_RECONNECT_LIMIT, 1, MAX_RECONNECT_LIMIT)
    window_ms = clamp(
        reconnect_window_ms, DEFAULT_RECONNECT_WINDOW_MS,
        MIN_RECONNECT_WINDOW_MS, MAX_RECONNECT_WINDOW_MS,
    )

    query = select(LogEvent).where(
        LogEvent.project_id == project_id,
        LogEvent.timestamp_ms >= start_ms,
        LogEvent.timestamp_ms <= end_ms,
        LogEvent.stage == "ble",
    )
    if device_mac:
        query = query.where(LogEvent.device_mac == device_mac)
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    events = db.execute(query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())).scalars().all()

    by_device: dict[str, list[LogEvent]] = {}
    for event in events:
        key = event.device_mac or event.device_sn or event.link_code
        if key:
            by_device.setdefault(key, []).append(event)

    items = []
    for key, device_events in by_device.items():
        summary = _summarize_device(key, device_events, window_ms)
        if summary is not None:
            items.append(summary)

    items.sort(
        key=lambda item: (
            item["reconnect_unresolved"],
            item["reconnect_delay_max_ms"] if item["reconnect_delay_max_ms"] is not None else -1,
            item["disconnects"],
        ),
        reverse=True,
    )
    items = items[:limit]
    return {
        "items": items,
        "summary": {
            "total_devices": len(items),
            "total_disconnects": sum(item["disconnects"] for item in items),
            "reconnect_window_ms": window_ms,
        },
    }
