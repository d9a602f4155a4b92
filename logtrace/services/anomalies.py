import logging
import re
from collections import Counter
from dataclasses import dataclass, field, asdict
from typing import Any, Callable

import numpy as np
from sklearn.ensemble import IsolationForest
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from logtrace.models.device_session import DeviceSession
from logtrace.models.log_event import LogEvent, PARSER_ERROR_EVENT
from logtrace.services.ble import is_ble_disconnect_event, is_ble_op, msg_preview, normalize_lower

logger = logging.getLogger(__name__)

FREQUENT_DISCONNECT_COUNT = 3
FREQUENT_DISCONNECT_WINDOW_MS = 60_000
TIMEOUT_RETRY_COUNT = 2
TIMEOUT_RETRY_WINDOW_MS = 30_000
ERROR_BURST_COUNT = 5
ERROR_BURST_WINDOW_MS = 10_000
SLOW_CONNECTION_MS = 10_000
COMMAND_FAILURE_RATE = 0.3
COMMAND_FAILURE_MIN_EVENTS = 5

VOLUME_BUCKET_MS = 60_000
MIN_BUCKETS_FOR_SPIKE = 5
ISOLATION_FOREST_CONTAMINATION = 0.1

SAMPLE_SIZE = 5
DEFAULT_CONTEXT_SIZE = 10
RELATED_EVENTS_LIMIT = 50


@dataclass(frozen=True)
class KnownErrorPattern:
    pattern: re.Pattern
    category: str
    severity: int
    suggestion: str


KNOWN_ERROR_PATTERNS: tuple[KnownErrorPattern, ...] = (
    KnownErrorPattern(re.compile(r"GATT_ERROR|GATT_FAILURE", re.I), "gatt_error", 4,
                      "GATT operation failed. Check Bluetooth connection stability and retry."),
    KnownErrorPattern(re.compile(r"CONNECTION_TIMEOUT|CONNECT_TIMEOUT", re.I), "connection_timeout", 3,
                      "Connection timeout. Ensure device is in range and not paired with other devices."),
    KnownErrorPattern(re.compile(r"BOND_FAILED|PAIRING_FAILED", re.I), "pairing_failure", 4,
                      "Pairing failed. Remove device bond and try again."),
    KnownErrorPattern(re.compile(r"SERVICE_NOT_FOUND|CHARACTERISTIC_NOT_FOUND", re.I), "service_missing", 5,
                      "BLE service/characteristic not found. Check device firmware version."),
    KnownErrorPattern(re.compile(r"WRITE_FAILED|READ_FAILED", re.I), "io_error", 3,
                      "BLE read/write operation failed. Verify connection is still active."),
    KnownErrorPattern(re.compile(r"DISCONNECTED_UNEXPECTEDLY|CONNECTION_LOST", re.I), "unexpected_disconnect", 4,
                      "Unexpected disconnection. Check for interference or low battery."),
    KnownErrorPattern(re.compile(r"CRC_ERROR|CHECKSUM", re.I), "data_corruption", 5,
                      "Data corruption detected. Check for signal interference."),
    KnownErrorPattern(re.compile(r"BLUETOOTH_OFF|ADAPTER_DISABLED", re.I), "bluetooth_disabled", 2,
                      "Bluetooth is disabled. Enable Bluetooth in system settings."),
    KnownErrorPattern(re.compile(r"PERMISSION_DENIED|LOCATION_REQUIRED", re.I), "permission_error", 2,
                      "Missing permissions. Grant Bluetooth and location permissions."),
)

CONNECTION_FLOW_PATTERNS = {
    "normal": ("SCAN", "FOUND", "CONNECT", "CONNECTED", "DISCOVER", "ENABLE", "WRITE", "READ"),
    "disconnect": ("DISCONNECT", "DISCONNECTED", "CLOSE", "RELEASE"),
    "error": ("ERROR", "FAILED", "TIMEOUT", "EXCEPTION"),
}


@dataclass
class AnomalyPattern:
    pattern_type: str
    severity: int
    description: str
    occurrence_count: int
    affected_sessions: list[str] = field(default_factory=list)
    sample_event_ids: list[int] = field(default_factory=list)
    suggestion: str | None = None
    time_window_ms: int | None = None
    device_mac: str | None = None
    sdk_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScanWindow:
    events: list
    sessions: list
    start_ms: int
    end_ms: int
    clustered: bool = False


@dataclass(frozen=True)
class Scanner:
    id: str
    run: Callable[[ScanWindow], list[AnomalyPattern]]


def find_event_clusters(events: list, window_ms: int) -> list[list]:
    """Split time-ordered events into runs that start within window_ms of the run's first event."""
    if not events:
        return []
    clusters = []
    current = [events[0]]
    cluster_start = events[0].timestamp_ms
    for event in events[1:]:
        if event.timestamp_ms - cluster_start <= window_ms:
            current.append(event)
            continue
        if len(current) >= 2:
            clusters.append(current)
        current = [event]
        cluster_start = event.timestamp_ms
    if len(current) >= 2:
        clusters.append(current)
    return clusters


def _cluster_span(cluster: list) -> int:
    return cluster[-1].timestamp_ms - cluster[0].timestamp_ms


def _link_codes(events) -> list[str]:
    seen: list[str] = []
    for e in events:
        if e.link_code and e.link_code not in seen:
            seen.append(e.link_code)
    return seen


def _pattern_from(events: list, pattern_type: str, severity: int, description: str, **extra) -> AnomalyPattern:
    return AnomalyPattern(
        pattern_type=pattern_type,
        severity=severity,
        description=description,
        occurrence_count=len(events),
        affected_sessions=_link_codes(events),
        sample_event_ids=[e.id for e in events[:SAMPLE_SIZE]],
        device_mac=events[0].device_mac if events else None,
        sdk_version=events[0].sdk_version if events else None,
        **extra,
    )


def is_timeout_event(event, include_retry: bool = True) -> bool:
    if is_ble_op(event, "connect") and normalize_lower(event.result) in ("timeout", "retry", "fail"):
        return True
    name = event.event_name.upper()
    if "TIMEOUT" in name:
        return True
    return include_retry and event.level >= 4 and "RETRY" in name


def classify_error(event_name: str, error_code: str | None) -> dict[str, Any]:
    combined = f"{event_name} {error_code or ''}"
    for known in KNOWN_ERROR_PATTERNS:
        if known.pattern.search(combined):
            return {
                "category": known.category,
                "severity": known.severity,
                "suggestion": known.suggestion,
                "matched": True,
            }

    name = event_name.upper()
    if "TIMEOUT" in name:
        return {"category": "timeout", "severity": 3, "matched": False,
                "suggestion": "Operation timed out. Check device responsiveness and connection quality."}
    if "ERROR" in name or "FAILED" in name:
        return {"category": "general_error", "severity": 4, "matched": False,
                "suggestion": "An error occurred. Review the message details for more information."}
    if "DISCONNECT" in name:
        return {"category": "disconnect", "severity": 3, "matched": False,
                "suggestion": "Device disconnected. Check if this was expected or triggered by an error."}
    return {"category": "unknown", "severity": 3, "matched": False,
            "suggestion": "Check device connection and retry the operation."}


# Scanners


def scan_frequent_disconnect(window: ScanWindow) -> list[AnomalyPattern]:
    events = [e for e in window.events if is_ble_disconnect_event(e)]
    if not window.clustered:
        if len(events) < FREQUENT_DISCONNECT_COUNT:
            return []
        return [_pattern_from(
            events, "frequent_disconnect", 4 if len(events) >= 5 else 3,
            f"Detected {len(events)} disconnect events",
        )]

    found = []
    for cluster in find_event_clusters(events, FREQUENT_DISCONNECT_WINDOW_MS):
        if len(cluster) < FREQUENT_DISCONNECT_COUNT:
            continue
        span = _cluster_span(cluster)
        found.append(_pattern_from(
            cluster, "frequent_disconnect", 5 if len(cluster) >= 5 else 4,
            f"{len(cluster)} disconnects in {round(span / 1000)}s",
            suggestion="Check for connection stability issues, signal interference, or device battery.",
            time_window_ms=span,
        ))
    return found


def scan_timeout_retry(window: ScanWindow) -> list[AnomalyPattern]:
    events = [e for e in window.events if is_timeout_event(e, include_retry=not window.clustered)]
    if not window.clustered:
        if len(events) < TIMEOUT_RETRY_COUNT:
            return []
        return [_pattern_from(
            events, "timeout_retry", 4 if len(events) >= 4 else 3,
            f"Detected {len(events)} timeout/retry events",
        )]

    found = []
    for cluster in find_event_clusters(events, TIMEOUT_RETRY_WINDOW_MS):
        if len(cluster) < TIMEOUT_RETRY_COUNT:
            continue
        span = _cluster_span(cluster)
        found.append(_pattern_from(
            cluster, "timeout_retry", 4 if len(cluster) >= 4 else 3,
            f"{len(cluster)} timeouts in {round(span / 1000)}s",
            suggestion="Device may be unresponsive. Check device status and connection quality.",
            time_window_ms=span,
        ))
    return found


def scan_error_burst(window: ScanWindow) -> list[AnomalyPattern]:
    events = [e for e in window.events if e.level >= 4]
    if not window.clustered:
        if len(events) < ERROR_BURST_COUNT:
            return []
        return [_pattern_from(
            events, "error_burst", 5 if len(events) >= 10 else 4,
            f"Detected {len(events)} error-level events",
        )]

    found = []
    for cluster in find_event_clusters(events, ERROR_BURST_WINDOW_MS):
        if len(cluster) < ERROR_BURST_COUNT:
            continue
        span = _cluster_span(cluster)
        categories = Counter(classify_error(e.event_name, e.error_code)["category"] for e in cluster)
        top_category = categories.most_common(1)[0][0]
        found.append(_pattern_from(
            cluster, "error_burst", 5 if len(cluster) >= 10 else 4,
            f"{len(cluster)} errors in {round(span / 1000)}s (mostly {top_category})",
            suggestion="Multiple errors occurred rapidly. Review the error sequence to identify root cause.",
            time_window_ms=span,
        ))
    return found


def scan_slow_connection(window: ScanWindow) -> list[AnomalyPattern]:
    slow = [
        s for s in window.sessions
        if s.scan_start_ms is not None and s.connected_ms is not None
        and s.connected_ms - s.scan_start_ms > SLOW_CONNECTION_MS
    ]
    if not slow:
        return []
    return [AnomalyPattern(
        pattern_type="slow_connection",
        severity=4 if len(slow) >= 3 else 3,
        description=f"{len(slow)} sessions took >{SLOW_CONNECTION_MS // 1000}s to connect",
        occurrence_count=len(slow),
        affected_sessions=[s.link_code for s in slow],
        suggestion="Connection is slow. Check for interference, device distance, or pairing issues.",
        time_window_ms=window.end_ms - window.start_ms,
        device_mac=slow[0].device_mac,
        sdk_version=slow[0].sdk_version,
    )]


def scan_command_failure(window: ScanWindow) -> list[AnomalyPattern]:
    commands = [
        e for e in window.events
        if any(word in e.event_name.upper() for word in ("COMMAND", "REQUEST", "WRITE"))
    ]
    if len(commands) < COMMAND_FAILURE_MIN_EVENTS:
        return []
    failed = [e for e in commands if e.level >= 4]
    rate = len(failed) / len(commands)
    if rate <= COMMAND_FAILURE_RATE:
        return []
    pattern = _pattern_from(
        failed, "command_failure", 5 if rate > 0.5 else 4,
        f"{round(rate * 100)}% command failure rate ({len(failed)}/{len(commands)})",
        suggestion="High command failure rate. Check device responsiveness and data format.",
        time_window_ms=window.end_ms - window.start_ms,
    )
    return [pattern]


def _volume_buckets(events: list) -> list[dict[str, Any]]:
    buckets: dict[int, dict[str, Any]] = {}
    for e in events:
        start = e.timestamp_ms - e.timestamp_ms % VOLUME_BUCKET_MS
        b = buckets.setdefault(start, {"start_ms": start, "total": 0, "errors": 0, "disconnects": 0, "ids": []})
        b["total"] += 1
        if e.level >= 4:
            b["errors"] += 1
        if is_ble_disconnect_event(e):
            b["disconnects"] += 1
        if len(b["ids"]) < SAMPLE_SIZE:
            b["ids"].append(e.id)
    return [buckets[k] for k in sorted(buckets)]


def scan_volume_spike(window: ScanWindow) -> list[AnomalyPattern]:
    buckets = _volume_buckets(window.events)
    if len(buckets) < MIN_BUCKETS_FOR_SPIKE:
        logger.debug(
            "Skipping volume spike scan: only %d buckets (need >= %d)",
            len(buckets), MIN_BUCKETS_FOR_SPIKE,
        )
        return []

    X = np.array([[b["total"], b["errors"], b["disconnects"]] for b in buckets], dtype=np.float64)
    clf = IsolationForest(
        contamination=ISOLATION_FOREST_CONTAMINATION,
        random_state=42,
        n_estimators=100,
    )
    predictions = clf.fit_predict(X)
    median_total = float(np.median(X[:, 0]))

    found = []
    for bucket, pred in zip(buckets, predictions):
        if pred != -1 or bucket["total"] <= median_total:
            continue
        found.append(AnomalyPattern(
            pattern_type="volume_spike",
            severity=4 if bucket["errors"] else 3,
            description=(
                f"{bucket['total']} events in one minute (median {median_total:g}), "
                f"{bucket['errors']} errors, {bucket['disconnects']} disconnects"
            ),
            occurrence_count=bucket["total"],
            sample_event_ids=bucket["ids"],
            suggestion="Unusual burst of log volume. Inspect the window for retry loops or reconnect storms.",
            time_window_ms=VOLUME_BUCKET_MS,
        ))
    return found


SCANNERS: tuple[Scanner, ...] = (
    Scanner("frequent_disconnect", scan_frequent_disconnect),
    Scanner("timeout_retry", scan_timeout_retry),
    Scanner("error_burst", scan_error_burst),
    Scanner("slow_connection", scan_slow_connection),
    Scanner("command_failure", scan_command_failure),
    Scanner("volume_spike", scan_volume_spike),
)


def run_scanners(window: ScanWindow, scanners: tuple[Scanner, ...] = SCANNERS) -> tuple[list[AnomalyPattern], list[str]]:
    patterns: list[AnomalyPattern] = []
    failed: list[str] = []
    for scanner in scanners:
        try:
            patterns.extend(scanner.run(window))
        except Exception:
            logger.exception("Anomaly scanner %s failed", scanner.id)
            failed.append(scanner.id)
    return patterns, failed


def generate_recommendations(patterns: list[AnomalyPattern]) -> list[str]:
    if not patterns:
        return ["No significant issues detected. System is operating normally."]

    recommendations: list[str] = []
    if any(p.severity >= 5 for p in patterns):
        recommendations.append("CRITICAL: Immediate attention required for high-severity issues.")

    types = {p.pattern_type for p in patterns}
    if {"frequent_disconnect", "timeout_retry"} <= types:
        recommendations.append("Multiple connection stability issues detected. Consider checking:")
        recommendations += ["  - Device battery level", "  - Signal interference sources",
                            "  - Distance between device and phone"]
    if "command_failure" in types:
        recommendations.append("High command failure rate suggests communication issues:")
        recommendations += ["  - Verify command format and parameters",
                            "  - Check device firmware version compatibility"]
    if "slow_connection" in types:
        recommendations.append("Slow connection times may indicate:")
        recommendations += ["  - Bluetooth adapter issues", "  - Too many paired devices",
                            "  - Device discovery delays"]

    deduped: list[str] = []
    for line in recommendations:
        if line not in deduped:
            deduped.append(line)
    return deduped


def _window_events(
    db: Session, project_id: int, start_ms: int, end_ms: int,
    device_mac: str | None, log_file_id: int | None,
) -> list[LogEvent]:
    query = select(LogEvent).where(
        LogEvent.project_id == project_id,
        LogEvent.timestamp_ms >= start_ms,
        LogEvent.timestamp_ms <= end_ms,
        LogEvent.event_name != PARSER_ERROR_EVENT,
    )
    if device_mac:
        query = query.where(LogEvent.device_mac == device_mac)
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    return list(db.execute(query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())).scalars().all())


def _window_sessions(
    db: Session, project_id: int, start_ms: int, end_ms: int, device_mac: str | None
) -> list[DeviceSession]:
    query = select(DeviceSession).where(
        DeviceSession.project_id == project_id,
        DeviceSession.start_time_ms >= start_ms,
        DeviceSession.end_time_ms <= end_ms,
    )
    if device_mac:
        query = query.where(DeviceSession.device_mac == device_mac)
    return list(db.execute(query).scalars().all())


def detect_anomalies(
    db: Session,
    project_id: int,
    start_ms: int,
    end_ms: int,
    device_mac: str | None = None,
    log_file_id: int | None = None,
    enhanced: bool = False,
) -> dict[str, Any]:
    events = _window_events(db, project_id, start_ms, end_ms, device_mac, log_file_id)
    sessions = _window_sessions(db, project_id, start_ms, end_ms, device_mac)
    window = ScanWindow(events=events, sessions=sessions, start_ms=start_ms, end_ms=end_ms, clustered=enhanced)

    patterns, failed = run_scanners(window)
    patterns.sort(key=lambda p: p.severity, reverse=True)

    summary: dict[str, Any] = {
        "total_events": len(events),
        "error_events": sum(1 for e in events if e.level >= 4),
        "disconnect_events": sum(1 for e in events if is_ble_disconnect_event(e)),
        "timeout_events": sum(1 for e in events if is_timeout_event(e)),
    }
    result: dict[str, Any] = {
        "patterns": [p.to_dict() for p in patterns],
        "summary": summary,
        "failed_scanners": failed,
    }
    if enhanced:
        summary.update({
            "total_anomalies": len(patterns),
            "critical_count": sum(1 for p in patterns if p.severity >= 5),
            "high_count": sum(1 for p in patterns if p.severity == 4),
            "medium_count": sum(1 for p in patterns if p.severity == 3),
            "affected_sessions_count": len({s for p in patterns for s in p.affected_sessions}),
        })
        result["recommendations"] = generate_recommendations(patterns)
    return result


def error_distribution(
    db: Session,
    project_id: int,
    start_ms: int,
    end_ms: int,
    device_mac: str | None = None,
    log_file_id: int | None = None,
) -> dict[str, Any]:
    query = select(LogEvent.event_name, LogEvent.error_code, LogEvent.level, LogEvent.timestamp_ms).where(
        LogEvent.project_id == project_id,
        LogEvent.timestamp_ms >= start_ms,
        LogEvent.timestamp_ms <= end_ms,
        LogEvent.event_name != PARSER_ERROR_EVENT,
        or_(LogEvent.level >= 3, LogEvent.error_code.is_not(None)),
    )
    if device_mac:
        query = query.where(LogEvent.device_mac == device_mac)
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    rows = db.execute(query).all()

    by_code: dict[str, dict[str, int]] = {}
    by_name: dict[str, dict[str, int]] = {}
    by_level: Counter = Counter()
    for row in rows:
        for bucket, key in ((by_code, row.error_code or "UNKNOWN"), (by_name, row.event_name)):
            entry = bucket.setdefault(key, {"count": 0, "last_seen": row.timestamp_ms})
            entry["count"] += 1
            entry["last_seen"] = max(entry["last_seen"], row.timestamp_ms)
        by_level[row.level] += 1

    return {
        "total": len(rows),
        "by_error_code": sorted(
            ({"code": k, **v} for k, v in by_code.items()), key=lambda x: x["count"], reverse=True
        ),
        "by_event_name": sorted(
            ({"name": k, **v} for k, v in by_name.items()), key=lambda x: x["count"], reverse=True
        ),
        "by_level": [{"level": lvl, "count": n} for lvl, n in sorted(by_level.items(), reverse=True)],
    }


def analyze_connection_flow(events: list) -> dict[str, Any]:
    last_normal = None
    error_point = None
    phase = "unknown"
    flow_type = "normal"
    for event in events:
        name = event.event_name.upper()
        for step in CONNECTION_FLOW_PATTERNS["normal"]:
            if step in name:
                last_normal = step
                phase = step.lower()
                break
        if event.level >= 4 or any(item in name for item in CONNECTION_FLOW_PATTERNS["error"]):
            flow_type = "error"
            error_point = event.event_name
    if flow_type == "normal" and last_normal is None:
        flow_type = "incomplete"
    return {
        "phase": phase,
        "flow_type": flow_type,
        "last_normal_step": last_normal,
        "error_point": error_point,
    }


def _brief(event: LogEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_name": event.event_name,
        "level": event.level,
        "timestamp_ms": event.timestamp_ms,
        "msg": msg_preview(event.msg_json),
    }


def error_context(
    db: Session, project_id: int, event_id: int, context_size: int = DEFAULT_CONTEXT_SIZE
) -> dict[str, Any] | None:
    """Surrounding events, classification and flow position for one event."""
    target = db.execute(
        select(LogEvent).where(LogEvent.id == event_id, LogEvent.project_id == project_id)
    ).scalar_one_or_none()
    if target is None:
        return None

    base = select(LogEvent).where(
        LogEvent.project_id == project_id, LogEvent.log_file_id == target.log_file_id
    )
    before = list(db.execute(
        base.where(or_(
            LogEvent.timestamp_ms < target.timestamp_ms,
            and_(LogEvent.timestamp_ms == target.timestamp_ms, LogEvent.id < target.id),
        ))
        .order_by(LogEvent.timestamp_ms.desc(), LogEvent.id.desc())
        .limit(context_size)
    ).scalars().all())
    before.reverse()
    after = list(db.execute(
        base.where(or_(
            LogEvent.timestamp_ms > target.timestamp_ms,
            and_(LogEvent.timestamp_ms == target.timestamp_ms, LogEvent.id > target.id),
        ))
        .order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
        .limit(context_size)
    ).scalars().all())

    related: list[LogEvent] = []
    conditions = []
    if target.link_code:
        conditions.append(LogEvent.link_code == target.link_code)
    if target.request_id:
        conditions.append(LogEvent.request_id == target.request_id)
    if conditions:
        related = list(db.execute(
            select(LogEvent)
            .where(LogEvent.project_id == project_id, LogEvent.log_file_id == target.log_file_id, or_(*conditions))
            .order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
            .limit(RELATED_EVENTS_LIMIT)
        ).scalars().all())

    analysis = classify_error(target.event_name, target.error_code)
    analysis["flow_context"] = analyze_connection_flow(before + [target] + after)
    analysis["related_count"] = len(related)

    event = _brief(target)
    event.update({
        "error_code": target.error_code,
        "device_mac": target.device_mac,
        "sdk_version": target.sdk_version,
    })
    return {
        "event": event,
        "context": {
            "before": [_brief(e) for e in before],
            "after": [_brief(e) for e in after],
        },
        "analysis": analysis,
        "related": [
            {
                "id": e.id,
                "event_name": e.event_name,
                "level": e.level,
                "timestamp_ms": e.timestamp_ms,
                "link_code": e.link_code,
                "request_id": e.request_id,
                "error_code": e.error_code,
            }
            for e in related[:20]
        ],
    }
