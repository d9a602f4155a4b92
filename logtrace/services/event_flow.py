"""Main-flow stage timing and known-event coverage for a single log file.

The main flow follows a BLE session from SDK initialisation up to the first
real-time data callback. Each stage lists the events that belong to it; the
first event of a stage is its start marker and the remaining events close it.
"""
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT

logger = logging.getLogger(__name__)

MAIN_FLOW_ID = "main_flow"
MAIN_FLOW_NAME = "Main flow"
SAMPLE_SESSIONS = 5
TIMEOUT_SEVERITY = 3
MISSING_EVENT_SEVERITY = 4


@dataclass(frozen=True)
class FlowEvent:
    name: str
    required: bool = False


@dataclass(frozen=True)
class FlowStage:
    id: str
    name: str
    required: bool
    max_duration_ms: int | None
    events: tuple[FlowEvent, ...]

    @property
    def event_names(self) -> tuple[str, ...]:
        return tuple(e.name for e in self.events)


MAIN_FLOW_STAGES: tuple[FlowStage, ...] = (
    FlowStage("sdk_init", "SDK init", True, 3_000, (
        FlowEvent("SDK init start", True),
        FlowEvent("SDK init success", True),
        FlowEvent("SDK init failure"),
    )),
    FlowStage("ble_scan", "BLE scan", True, 30_000, (
        FlowEvent("BLE start searching", True),
        FlowEvent("BLE search success", True),
        FlowEvent("BLE search failure"),
    )),
    FlowStage("ble_connect", "BLE connect", True, 15_000, (
        FlowEvent("BLE start connection", True),
        FlowEvent("BLE connection success", True),
        FlowEvent("BLE connection failure"),
    )),
    FlowStage("ble_auth", "Device auth", True, 10_000, (
        FlowEvent("BLE auth sendKey"),
        FlowEvent("BLE auth success", True),
        FlowEvent("BLE auth failure"),
    )),
    FlowStage("history_data_query", "History data query", False, 120_000, (
        FlowEvent("BLE start getData"),
        FlowEvent("BLE start getData error"),
    )),
    FlowStage("history_data_callback", "History data callback", False, 120_000, (
        FlowEvent("BLE data receive start"),
        FlowEvent("BLE data receive done"),
    )),
    FlowStage("realtime_data", "Real-time data", True, 60_000, (
        FlowEvent("BLE real time data callback start", True),
        FlowEvent("BLE real time data callback done", True),
    )),
)


@dataclass(frozen=True)
class KnownEvent:
    name: str
    level: str
    description: str


def _triple(prefix: str, description: str) -> tuple[KnownEvent, ...]:
    return (
        KnownEvent(prefix, "INFO", description),
        KnownEvent(f"{prefix} success", "INFO", f"{description} succeeded"),
        KnownEvent(f"{prefix} failure", "ERROR", f"{description} failed"),
    )


KNOWN_EVENT_CATEGORIES: dict[str, tuple[KnownEvent, ...]] = {
    "sdk_init": (
        KnownEvent("SDK init start", "INFO", "SDK init started"),
        KnownEvent("SDK init success", "INFO", "SDK init succeeded"),
        KnownEvent("SDK init failure", "ERROR", "SDK init failed"),
    ),
    "ble_library": (
        KnownEvent("BLE library version", "INFO", "BLE library version"),
    ),
    "ble_scan": (
        KnownEvent("BLE start searching", "INFO", "Scan started"),
        KnownEvent("BLE search success", "INFO", "Target device found"),
        KnownEvent("BLE search failure", "ERROR", "Scan failed"),
    ),
    "ble_auth": (
        KnownEvent("BLE auth sendKey", "INFO", "Auth key sent"),
        KnownEvent("BLE auth success", "INFO", "Auth succeeded"),
        KnownEvent("BLE auth failure", "ERROR", "Auth failed"),
    ),
    "device_status": _triple("BLE query device status", "Device status query"),
    "device_sn": _triple("BLE query sn", "Device SN query"),
    "device_sensitivity": _triple("BLE query sensitivity", "Sensitivity query"),
    "device_activate_time": _triple("BLE query activate time", "Activation time query"),
    "device_init_duration": _triple("BLE query init duration", "Init duration query"),
    "device_activate": _triple("BLE activate", "Device activation"),
    "device_deactivate": _triple("BLE deactivate", "Device deactivation"),
    "ble_connect": (
        KnownEvent("BLE start connection", "INFO", "Connection started"),
        KnownEvent("BLE connection success", "INFO", "Connected"),
        KnownEvent("BLE connection failure", "ERROR", "Connection failed"),
        KnownEvent("BLE disconnect", "INFO", "Disconnected"),
    ),
    "history_data_query": (
        KnownEvent("BLE start getData", "INFO", "History request started"),
        KnownEvent("BLE start getData error", "INFO", "History request failed"),
    ),
    "history_data_callback": (
        KnownEvent("BLE data receive start", "DEBUG", "History transfer started"),
        KnownEvent("BLE data receive done", "DEBUG", "History transfer finished"),
    ),
    "realtime_data": (
        KnownEvent("BLE real time data callback start", "DEBUG", "Real-time callback started"),
        KnownEvent("BLE real time data callback done", "DEBUG", "Real-time callback finished"),
    ),
    "latest_valid_data": (
        KnownEvent("BLE latest valid data callback start", "DEBUG", "Latest valid data callback started"),
        KnownEvent("BLE latest valid data callback done", "DEBUG", "Latest valid data callback finished"),
    ),
    "ble_state": (
        KnownEvent("BLE state", "INFO", "Bluetooth state change"),
    ),
    "app_state": (
        KnownEvent("APP starts to launch", "INFO", "App launch started"),
        KnownEvent("APP startup completed", "INFO", "App launch completed"),
        KnownEvent("APP enter foreground", "INFO", "App entered foreground"),
        KnownEvent("APP enter background", "INFO", "App entered background"),
    ),
    "ble_switch": (
        KnownEvent("BLE turn on", "INFO", "Bluetooth on"),
        KnownEvent("BLE turn off", "WARN", "Bluetooth off"),
    ),
    "general": (
        KnownEvent("BLE exception", "ERROR", "Bluetooth exception"),
        KnownEvent("BLE command timeout", "ERROR", "Command timed out"),
        KnownEvent("BLE retry", "WARN", "Retry"),
        KnownEvent("BLE permission denied", "ERROR", "Permission denied"),
        KnownEvent("HTTP request start", "DEBUG", "HTTP request started"),
        KnownEvent("HTTP request success", "DEBUG", "HTTP request succeeded"),
        KnownEvent("HTTP request failure", "ERROR", "HTTP request failed"),
        KnownEvent("MQTT connected", "INFO", "MQTT connected"),
    ),
}

KNOWN_EVENT_NAMES = frozenset(
    e.name for events in KNOWN_EVENT_CATEGORIES.values() for e in events
)


def _rate(part: int, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0.0


# --- Stage timing ---


def _paired_durations(events, start_name: str, end_names: set[str]) -> list[tuple[int, int]]:
    pairs = []
    pending = None
    for event in events:
        ts = event.timestamp_ms
        if event.event_name == start_name:
            pending = ts
            continue
        if pending is not None and event.event_name in end_names and ts >= pending:
            pairs.append((pending, ts))
            pending = None
    return pairs


def stage_durations(stage: FlowStage, matched) -> list[tuple[int, int]]:
    """Start/end pairs for one stage: by attempt id, else sequential, else the full range."""
    if not matched:
        return []
    start_name = stage.events[0].name
    end_names = set(stage.event_names[1:])

    by_attempt: dict[str, list] = {}
    for event in matched:
        if event.attempt_id:
            by_attempt.setdefault(event.attempt_id, []).append(event)
    pairs = []
    for attempt_events in by_attempt.values():
        pairs.extend(_paired_durations(attempt_events, start_name, end_names))
    if not pairs:
        pairs = _paired_durations(matched, start_name, end_names)
    if not pairs:
        pairs = [(matched[0].timestamp_ms, matched[-1].timestamp_ms)]
    return pairs


def analyze_stage(stage: FlowStage, events) -> dict[str, Any]:
    names = set(stage.event_names)
    matched = [e for e in events if e.event_name in names]
    pairs = stage_durations(stage, matched)
    durations = [max(0, end - start) for start, end in pairs]
    start_ms = end_ms = duration_ms = None
    if pairs:
        longest = max(range(len(pairs)), key=lambda i: durations[i])
        start_ms, end_ms = pairs[longest]
        duration_ms = durations[longest]
    seen = {e.event_name for e in matched}
    completed = bool(matched) and all(ev.name in seen for ev in stage.events if ev.required)
    return {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "start_ms": start_ms,
        "end_ms": end_ms,
        "duration_ms": duration_ms,
        "attempt_durations_ms": durations,
        "completed": completed,
        "events": [{"event_name": e.event_name, "timestamp_ms": e.timestamp_ms} for e in matched],
    }


def analyze_flow_session(link_code: str, events) -> dict[str, Any]:
    """Stage timings for one link code's time-ordered events."""
    device_mac = next((e.device_mac for e in events if e.device_mac), None)
    timings = []
    missed: list[str] = []
    stages_completed = 0
    completed = bool(events)
    for stage in MAIN_FLOW_STAGES:
        timing = analyze_stage(stage, events)
        timings.append(timing)
        if timing["completed"]:
            stages_completed += 1
        elif stage.required:
            completed = False
            seen = {e["event_name"] for e in timing["events"]}
            missed.extend(ev.name for ev in stage.events if ev.required and ev.name not in seen)

    first_start = timings[0]["start_ms"]
    last_end = timings[-1]["end_ms"]
    total = last_end - first_start if first_start is not None and last_end is not None else None
    return {
        "link_code": link_code,
        "device_mac": device_mac,
        "total_duration_ms": total,
        "completed": completed,
        "stages_completed": stages_completed,
        "coverage_rate": _rate(stages_completed, len(MAIN_FLOW_STAGES)),
        "stage_timings": timings,
        "missed_events": missed,
    }


def _aggregate_stage(stage: FlowStage, index: int, sessions: list[dict]) -> dict[str, Any]:
    total = len(sessions)
    timings = [s["stage_timings"][index] for s in sessions]

    event_results = []
    for ev in stage.events:
        hits = sum(1 for t in timings if any(e["event_name"] == ev.name for e in t["events"]))
        occurrences = sum(1 for t in timings for e in t["events"] if e["event_name"] == ev.name)
        event_results.append({
            "event_name": ev.name,
            "required": ev.required,
            "occurrence_count": occurrences,
            "session_hit_count": hits,
            "missed_count": total - hits,
            "hit_rate": _rate(hits, total),
        })

    covered = sum(1 for t in timings if t["events"])
    durations = [d for t in timings for d in t["attempt_durations_ms"]]
    max_observed = max(durations) if durations else None

    issues = []
    if stage.max_duration_ms and max_observed and max_observed > stage.max_duration_ms:
        affected = [
            s["link_code"] for s, t in zip(sessions, timings)
            if t["duration_ms"] is not None and t["duration_ms"] > stage.max_duration_ms
        ]
        issues.append({
            "type": "timeout",
            "severity": TIMEOUT_SEVERITY,
            "description": f"Stage took longer than expected (max {max_observed}ms, expected {stage.max_duration_ms}ms)",
            "affected_sessions": affected,
        })
    for result in event_results:
        if result["required"] and result["missed_count"] > 0:
            issues.append({
                "type": "missing_event",
                "severity": MISSING_EVENT_SEVERITY,
                "description": f"Missing required event: {result['event_name']} ({result['missed_count']} sessions)",
                "affected_sessions": [
                    s["link_code"] for s in sessions if result["event_name"] in s["missed_events"]
                ],
            })

    return {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "required": stage.required,
        "max_duration_ms": stage.max_duration_ms,
        "sessions_covered": covered,
        "coverage_rate": _rate(covered, total),
        "avg_duration_ms": sum(durations) / len(durations) if durations else None,
        "max_observed_duration_ms": max_observed,
        "min_duration_ms": min(durations) if durations else None,
        "events": event_results,
        "issues": issues,
    }


def summarize_main_flow(sessions: list[dict]) -> dict[str, Any]:
    total = len(sessions)
    completed = [s for s in sessions if s["completed"]]
    durations = [s["total_duration_ms"] for s in completed if s["total_duration_ms"] is not None]
    return {
        "template_id": MAIN_FLOW_ID,
        "template_name": MAIN_FLOW_NAME,
        "total_sessions": total,
        "completed_sessions": len(completed),
        "completion_rate": _rate(len(completed), total),
        "avg_total_duration_ms": sum(durations) / len(durations) if durations else None,
        "stages": [_aggregate_stage(stage, i, sessions) for i, stage in enumerate(MAIN_FLOW_STAGES)],
        "sample_sessions": sessions[:SAMPLE_SESSIONS],
    }


def analyze_main_flow(db: Session, log_file_id: int) -> dict[str, Any]:
    """Main-flow analysis over every link code that appears in one log file."""
    rows = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.link_code.is_not(None))
        .order_by(LogEvent.link_code, LogEvent.timestamp_ms, LogEvent.id)
    ).scalars().all()

    by_link: dict[str, list[LogEvent]] = {}
    for event in rows:
        by_link.setdefault(event.link_code, []).append(event)

    sessions = [analyze_flow_session(link, events) for link, events in by_link.items()]
    result = summarize_main_flow(sessions)
    logger.info(
        "Main flow analysed: %d/%d sessions completed",
        result["completed_sessions"], result["total_sessions"],
        extra={"log_file_id": log_file_id},
    )
    return result


# --- Known-event coverage ---


def summarize_coverage(counts: dict[str, int], total_events: int) -> dict[str, Any]:
    categories = []
    covered_total = 0
    missing_total = 0
    for category, known in KNOWN_EVENT_CATEGORIES.items():
        events = []
        covered = 0
        for ev in known:
            count = counts.get(ev.name, 0)
            if count > 0:
                covered += 1
            events.append({
                "event_name": ev.name,
                "level": ev.level,
                "description": ev.description,
                "covered": count > 0,
                "occurrence_count": count,
            })
        covered_total += covered
        missing_total += len(known) - covered
        categories.append({
            "category": category,
            "total_count": len(known),
            "covered_count": covered,
            "missing_count": len(known) - covered,
            "coverage_rate": _rate(covered, len(known)),
            "events": events,
        })

    extra = sorted(
        (
            {"event_name": name, "occurrence_count": count}
            for name, count in counts.items()
            if name not in KNOWN_EVENT_NAMES and name != PARSER_ERROR_EVENT
        ),
        key=lambda item: -item["occurrence_count"],
    )
    known_count = covered_total + missing_total
    return {
        "total_events": total_events,
        "known_events_count": known_count,
        "summary": {
            "covered_count": covered_total,
            "missing_count": missing_total,
            "coverage_rate": _rate(covered_total, known_count),
        },
        "by_category": categories,
        "extra_events": extra,
    }


def analyze_event_coverage(db: Session, log_file_id: int) -> dict[str, Any]:
    rows = db.execute(
        select(LogEvent.event_name, func.count(LogEvent.id))
        .where(LogEvent.log_file_id == log_file_id)
        .group_by(LogEvent.event_name)
    ).all()
    counts = {name: count for name, count in rows}
    result = summarize_coverage(counts, sum(counts.values()))
    logger.info(
        "Event coverage analysed: %d/%d known events covered",
        result["summary"]["covered_count"], result["known_events_count"],
        extra={"log_file_id": log_file_id},
    )
    return result
