"""Per-link-code session reconstruction.

Everything up to ``analyze_session_events`` / ``build_session_timeline`` is a
pure fold over an already time-ordered event list. The functions below that
read events from the database and upsert the ``DeviceSession`` view.
"""
import logging
from dataclasses import dataclass, asdict, fields
from typing import Any, Callable, Sequence

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from logtrace.models.device_session import DeviceSession, SessionStatus
from logtrace.models.log_event import LogEvent
from logtrace.services.ble import (
    BLE_PHASE_PATTERNS,
    is_ble_op,
    is_op,
    matches_pattern,
    msg_preview,
    normalize_lower,
)
from logtrace.services.commands import build_command_chains, clamp

logger = logging.getLogger(__name__)

DEFAULT_SESSION_LIMIT = 50
MAX_SESSION_LIMIT = 200

STALL_TIMEOUT_CODE = "DATA_STREAM_STALL_TIMEOUT"
PERSIST_TIMEOUT_CODE = "DATA_PERSIST_TIMEOUT"
INDEX_GAP_CODE = "INDEX_GAP_BLOCKED"
ACK_TIMEOUT_CODE = "ACK_TIMEOUT"
ACK_PENDING_CODE = "ACK_PENDING"
READY_REASON = "READY"

OUTCOME_STATUS = {
    "ack_ok": SessionStatus.done,
    "ack_timeout": SessionStatus.timeout,
    "stall_timeout": SessionStatus.error,
    "persist_timeout": SessionStatus.error,
    "index_gap_blocked": SessionStatus.error,
}


@dataclass(frozen=True)
class SessionMilestones:
    scan_start: int | None = None
    pair_start: int | None = None
    connect_start: int | None = None
    connected: int | None = None
    disconnect: int | None = None
    auth_ok: int | None = None
    ready_ok: int | None = None
    get_data_start: int | None = None
    history_done: int | None = None
    publish_start: int | None = None
    publish_ok: int | None = None
    ack_ok: int | None = None
    ack_timeout: int | None = None
    ack_pending: int | None = None
    stall_timeout: int | None = None
    persist_timeout: int | None = None
    index_gap_blocked: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return asdict(self)

    def deltas(self) -> dict[str, int | None]:
        """Milestones relative to connect start."""
        base = self.connect_start
        return {
            name: (value - base if value is not None and base is not None else None)
            for name, value in self.as_dict().items()
        }


@dataclass(frozen=True)
class SessionSummary:
    device_mac: str | None
    device_sn: str | None
    start_time_ms: int
    end_time_ms: int
    duration_ms: int | None
    status: str
    outcome: str
    event_count: int
    error_count: int
    command_count: int
    milestones: SessionMilestones
    sdk_version: str | None = None
    app_id: str | None = None
    terminal_info: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "milestones"}
        data["milestones"] = self.milestones.as_dict()
        data["milestone_deltas"] = self.milestones.deltas()
        return data

    def column_values(self) -> dict[str, Any]:
        m = self.milestones
        return {
            "device_mac": self.device_mac,
            "device_sn": self.device_sn,
            "start_time_ms": self.start_time_ms,
            "end_time_ms": self.end_time_ms,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "outcome": self.outcome,
            "event_count": self.event_count,
            "error_count": self.error_count,
            "command_count": self.command_count,
            "scan_start_ms": m.scan_start,
            "pair_start_ms": m.pair_start,
            "connect_start_ms": m.connect_start,
            "connected_ms": m.connected,
            "disconnect_ms": m.disconnect,
            "milestones": m.as_dict(),
            "sdk_version": self.sdk_version,
            "app_id": self.app_id,
            "terminal_info": self.terminal_info,
        }


@dataclass(frozen=True)
class PhaseWalk:
    status: str
    error_count: int
    scan_start: int | None
    pair_start: int | None
    connect_start: int | None
    connected: int | None
    disconnect: int | None


def walk_phases(events: Sequence) -> PhaseWalk:
    status = SessionStatus.scanning
    scan_start = pair_start = connect_start = connected = disconnect = None
    error_count = 0
    request_ids: set[str] = set()

    for event in events:
        name = event.event_name.upper()
        result = normalize_lower(event.result)
        ts = event.timestamp_ms

        if scan_start is None and matches_pattern(name, BLE_PHASE_PATTERNS["scan"]):
            scan_start = ts
            status = SessionStatus.scanning
        if pair_start is None and matches_pattern(name, BLE_PHASE_PATTERNS["pair"]):
            pair_start = ts
            status = SessionStatus.pairing
        if connect_start is None and (
            is_ble_op(event, "connect") or matches_pattern(name, BLE_PHASE_PATTERNS["connect"])
        ):
            connect_start = ts
            status = SessionStatus.connecting
        if is_ble_op(event, "connect", "ok") or matches_pattern(name, BLE_PHASE_PATTERNS["connected"]):
            connected = ts
            status = SessionStatus.connected
        if is_ble_op(event, "disconnect") or matches_pattern(name, BLE_PHASE_PATTERNS["disconnect"]):
            disconnect = ts
            status = SessionStatus.disconnected

        connect_failed = is_ble_op(event, "connect") and result in ("fail", "timeout")
        if event.level >= 4 or matches_pattern(name, BLE_PHASE_PATTERNS["error"]) or connect_failed:
            error_count += 1
            if "TIMEOUT" in name or result == "timeout":
                status = SessionStatus.timeout
            elif status != SessionStatus.disconnected:
                status = SessionStatus.error

        if event.request_id:
            request_ids.add(event.request_id)

    if connected is not None and request_ids:
        status = SessionStatus.communicating

    return PhaseWalk(
        status=SessionStatus(status).value,
        error_count=error_count,
        scan_start=scan_start,
        pair_start=pair_start,
        connect_start=connect_start,
        connected=connected,
        disconnect=disconnect,
    )


def _first(events: Sequence, predicate: Callable[[Any], bool]) -> int | None:
    for event in events:
        if predicate(event):
            return event.timestamp_ms
    return None


def _last_index(events: Sequence, predicate: Callable[[Any], bool]) -> int | None:
    for i in range(len(events) - 1, -1, -1):
        if predicate(events[i]):
            return i
    return None


def _is_ready(event) -> bool:
    if normalize_lower(event.stage) != "ble":
        return False
    if event.reason_code == READY_REASON:
        return True
    msg = event.msg_json
    return isinstance(msg, dict) and msg.get("reason") == READY_REASON


def _is_ack_ok(event) -> bool:
    return is_op(event, "mqtt", "ack", "ok")


def _is_ack_timeout(event) -> bool:
    return is_op(event, "mqtt", "ack", "timeout") or event.error_code == ACK_TIMEOUT_CODE


def _has_code(code: str) -> Callable[[Any], bool]:
    return lambda e: e.error_code == code


def pick_milestones(events: Sequence, walk: PhaseWalk | None = None) -> SessionMilestones:
    walk = walk or walk_phases(events)
    return SessionMilestones(
        scan_start=walk.scan_start,
        pair_start=walk.pair_start,
        connect_start=_first(events, lambda e: is_ble_op(e, "connect", "start")),
        connected=walk.connected,
        disconnect=walk.disconnect,
        auth_ok=_first(events, lambda e: is_ble_op(e, "auth", "ok")),
        ready_ok=_first(events, _is_ready),
        get_data_start=_first(events, lambda e: is_ble_op(e, "getdata", "start")),
        history_done=_first(events, lambda e: is_ble_op(e, "receivedata", "ok")),
        publish_start=_first(events, lambda e: is_op(e, "mqtt", "publish", "start")),
        publish_ok=_first(events, lambda e: is_op(e, "mqtt", "publish", "ok")),
        ack_ok=_first(events, _is_ack_ok),
        ack_timeout=_first(events, _is_ack_timeout),
        ack_pending=_first(events, _has_code(ACK_PENDING_CODE)),
        stall_timeout=_first(events, _has_code(STALL_TIMEOUT_CODE)),
        persist_timeout=_first(events, _has_code(PERSIST_TIMEOUT_CODE)),
        index_gap_blocked=_first(events, _has_code(INDEX_GAP_CODE)),
    )


def session_outcome(events: Sequence, milestones: SessionMilestones) -> str:
    if milestones.ack_ok is not None:
        # positions, not timestamps: an ack and its timeout can share a millisecond
        last_ok = _last_index(events, _is_ack_ok)
        last_timeout = _last_index(events, _is_ack_timeout)
        if last_timeout is None or last_ok > last_timeout:
            return "ack_ok"
    if milestones.ack_timeout is not None:
        return "ack_timeout"
    if milestones.stall_timeout is not None:
        return "stall_timeout"
    if milestones.persist_timeout is not None:
        return "persist_timeout"
    if milestones.index_gap_blocked is not None:
        return "index_gap_blocked"
    return "incomplete"


def analyze_session_events(events: Sequence) -> SessionSummary:
    """Fold a non-empty, time-ordered event list for one link code."""
    if not events:
        raise ValueError("cannot analyze an empty session")

    walk = walk_phases(events)
    milestones = pick_milestones(events, walk)
    outcome = session_outcome(events, milestones)
    status = OUTCOME_STATUS.get(outcome)
    status = status.value if status is not None else walk.status

    first, last = events[0], events[-1]
    return SessionSummary(
        device_mac=next((e.device_mac for e in events if e.device_mac), None),
        device_sn=next((e.device_sn for e in events if e.device_sn), None),
        start_time_ms=first.timestamp_ms,
        end_time_ms=last.timestamp_ms,
        duration_ms=last.timestamp_ms - first.timestamp_ms if len(events) > 1 else None,
        status=status,
        outcome=outcome,
        event_count=len(events),
        error_count=walk.error_count,
        command_count=len({e.request_id for e in events if e.request_id}),
        milestones=milestones,
        sdk_version=first.sdk_version,
        app_id=first.app_id,
        terminal_info=first.terminal_info,
    )


def _timeline_phase(event) -> str | None:
    name = event.event_name.upper()
    if is_ble_op(event, "connect", "ok"):
        return "connected"
    if is_ble_op(event, "disconnect"):
        return "disconnect"
    if is_ble_op(event, "connect"):
        return "connect"
    for phase in ("scan", "pair", "connect", "connected", "disconnect"):
        if matches_pattern(name, BLE_PHASE_PATTERNS[phase]):
            return phase
    if event.request_id:
        return "communicate"
    return None


def _timeline_status(event) -> str:
    name = event.event_name.upper()
    result = normalize_lower(event.result)
    status = "success"
    if is_ble_op(event, "connect", "start"):
        status = "pending"
    elif is_ble_op(event, "connect") and result == "timeout":
        status = "timeout"
    elif is_ble_op(event, "connect") and result == "fail":
        status = "error"

    if event.level >= 4 or (event.error_code and not is_ble_op(event, "disconnect")):
        status = "timeout" if "TIMEOUT" in name or result == "timeout" else "error"
    return status


def build_session_timeline(events: Sequence) -> list[dict[str, Any]]:
    """Group consecutive events into named phases with a roll-up status."""
    phases: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for event in events:
        phase = _timeline_phase(event)
        status = _timeline_status(event)
        item = {
            "id": event.id,
            "event_name": event.event_name,
            "timestamp_ms": event.timestamp_ms,
            "level": event.level,
            "msg": msg_preview(event.msg_json),
        }

        if phase and (current is None or current["name"] != phase):
            if current is not None:
                current["end_ms"] = event.timestamp_ms
                phases.append(current)
            current = {
                "name": phase,
                "start_ms": event.timestamp_ms,
                "end_ms": None,
                "status": status,
                "events": [item],
            }
        elif current is not None:
            current["events"].append(item)
            if status in ("error", "timeout"):
                current["status"] = status

    if current is not None:
        current["end_ms"] = events[-1].timestamp_ms
        phases.append(current)
    return phases


def event_item(event: LogEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_name": event.event_name,
        "level": event.level,
        "timestamp_ms": event.timestamp_ms,
        "msg": msg_preview(event.msg_json),
        "request_id": event.request_id,
        "error_code": event.error_code,
        "thread_name": event.thread_name,
    }


# Persistence


def load_link_events(
    db: Session, project_id: int, link_code: str, log_file_id: int | None = None
) -> list[LogEvent]:
    query = select(LogEvent).where(
        LogEvent.project_id == project_id, LogEvent.link_code == link_code
    )
    if log_file_id is not None:
        query = query.where(LogEvent.log_file_id == log_file_id)
    query = query.order_by(LogEvent.timestamp_ms.asc(), LogEvent.id.asc())
    return list(db.execute(query).scalars().all())


def upsert_session(
    db: Session, project_id: int, link_code: str, summary: SessionSummary
) -> DeviceSession:
    session = db.execute(
        select(DeviceSession).where(
            DeviceSession.project_id == project_id,
            DeviceSession.link_code == link_code,
        )
    ).scalar_one_or_none()
    values = summary.column_values()
    if session is None:
        session = DeviceSession(project_id=project_id, link_code=link_code, **values)
        db.add(session)
    else:
        for key, value in values.items():
            setattr(session, key, value)
    return session


def refresh_sessions(db: Session, project_id: int, link_codes: list[str]) -> list[DeviceSession]:
    """Recompute and upsert the sessions for the given link codes."""
    sessions = []
    for link_code in link_codes:
        events = load_link_events(db, project_id, link_code)
        if not events:
            continue
        sessions.append(upsert_session(db, project_id, link_code, analyze_session_events(events)))
    db.commit()
    logger.info(
        "Refreshed %d sessions", len(sessions), extra={"project_id": project_id}
    )
    return sessions


def aggregate_sessions(
    db: Session,
    project_id: int,
    start_ms: int,
    end_ms: int,
    force_refresh: bool = False,
) -> list[DeviceSession]:
    link_codes = db.execute(
        select(LogEvent.link_code)
        .where(
            LogEvent.project_id == project_id,
            LogEvent.timestamp_ms >= start_ms,
            LogEvent.timestamp_ms <= end_ms,
            LogEvent.link_code.is_not(None),
        )
        .distinct()
    ).scalars().all()

    existing = {
        s.link_code: s
        for s in db.execute(
            select(DeviceSession).where(
                DeviceSession.project_id == project_id,
                DeviceSession.link_code.in_(link_codes),
            )
        ).scalars().all()
    } if link_codes else {}

    sessions: list[DeviceSession] = []
    for link_code in sorted(link_codes):
        if link_code in existing and not force_refresh:
            sessions.append(existing[link_code])
            continue
        events = load_link_events(db, project_id, link_code)
        if not events:
            continue
        sessions.append(upsert_session(db, project_id, link_code, analyze_session_events(events)))
    db.commit()
    return sessions


def list_sessions(
    db: Session,
    project_id: int,
    start_ms: int | None = None,
    end_ms: int | None = None,
    device_mac: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> tuple[list[DeviceSession], bool]:
    limit = clamp(limit, DEFAULT_SESSION_LIMIT, 1, MAX_SESSION_LIMIT)
    query = select(DeviceSession).where(DeviceSession.project_id == project_id)
    if start_ms is not None:
        query = query.where(DeviceSession.start_time_ms >= start_ms)
    if end_ms is not None:
        query = query.where(DeviceSession.end_time_ms <= end_ms)
    if device_mac:
        query = query.where(DeviceSession.device_mac == device_mac)
    if status:
        query = query.where(DeviceSession.status == status)
    query = query.order_by(DeviceSession.start_time_ms.desc()).limit(limit + 1)
    rows = list(db.execute(query).scalars().all())
    return rows[:limit], len(rows) > limit


def derive_file_sessions(
    db: Session,
    project_id: int,
    log_file_id: int,
    start_ms: int | None = None,
    end_ms: int | None = None,
    device_mac: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> tuple[list[dict[str, Any]], bool]:
    """Sessions computed on the fly from one file's events; nothing is stored."""
    limit = clamp(limit, DEFAULT_SESSION_LIMIT, 1, MAX_SESSION_LIMIT)
    groups = db.execute(
        select(
            LogEvent.link_code,
            func.min(LogEvent.timestamp_ms).label("first_ms"),
            func.max(LogEvent.timestamp_ms).label("last_ms"),
        )
        .where(
            LogEvent.project_id == project_id,
            LogEvent.log_file_id == log_file_id,
            LogEvent.link_code.is_not(None),
        )
        .group_by(LogEvent.link_code)
    ).all()

    candidates = [
        g for g in groups
        if (start_ms is None or g.first_ms >= start_ms) and (end_ms is None or g.last_ms <= end_ms)
    ]
    candidates.sort(key=lambda g: g.first_ms, reverse=True)

    items: list[dict[str, Any]] = []
    for group in candidates:
        events = load_link_events(db, project_id, group.link_code, log_file_id)
        if not events:
            continue
        summary = analyze_session_events(events)
        if device_mac and summary.device_mac != device_mac:
            continue
        if status and summary.status != status:
            continue
        item = summary.to_dict()
        item["id"] = f"logFile:{log_file_id}:{group.link_code}"
        item["link_code"] = group.link_code
        items.append(item)
        if len(items) > limit:
            break
    return items[:limit], len(items) > limit


def get_session_detail(
    db: Session, project_id: int, link_code: str, log_file_id: int | None = None
) -> dict[str, Any] | None:
    events = load_link_events(db, project_id, link_code, log_file_id)
    if not events:
        return None

    summary = analyze_session_events(events)
    session = summary.to_dict()
    session["link_code"] = link_code
    return {
        "session": session,
        "timeline": build_session_timeline(events),
        "command_chains": [c.to_dict() for c in build_command_chains(events)],
        "events": [event_item(e) for e in events],
    }


COMPARE_TIMELINE_LIMIT = 100


def _align_timelines(events_a: Sequence, events_b: Sequence) -> list[dict[str, Any]]:
    def brief(e):
        return {"event_name": e.event_name, "level": e.level}

    rows: list[dict[str, Any]] = []
    ia = ib = 0
    while (ia < len(events_a) or ib < len(events_b)) and len(rows) < COMPARE_TIMELINE_LIMIT:
        a = events_a[ia] if ia < len(events_a) else None
        b = events_b[ib] if ib < len(events_b) else None
        if a is None:
            rows.append({"timestamp_ms": b.timestamp_ms, "a": None, "b": brief(b), "status": "only_b"})
            ib += 1
        elif b is None:
            rows.append({"timestamp_ms": a.timestamp_ms, "a": brief(a), "b": None, "status": "only_a"})
            ia += 1
        elif a.event_name == b.event_name:
            rows.append({
                "timestamp_ms": a.timestamp_ms,
                "a": brief(a),
                "b": brief(b),
                "status": "match" if a.level == b.level else "diff",
            })
            ia += 1
            ib += 1
        else:
            rows.append({"timestamp_ms": a.timestamp_ms, "a": brief(a), "b": None, "status": "only_a"})
            rows.append({"timestamp_ms": b.timestamp_ms, "a": None, "b": brief(b), "status": "only_b"})
            ia += 1
            ib += 1
    return rows[:COMPARE_TIMELINE_LIMIT]


def compare_sessions(
    db: Session, project_id: int, link_code_a: str, link_code_b: str
) -> dict[str, Any] | None:
    """Side-by-side milestones, event vocabulary and aligned timeline of two sessions."""
    events_a = load_link_events(db, project_id, link_code_a)
    events_b = load_link_events(db, project_id, link_code_b)
    if not events_a or not events_b:
        return None

    a = analyze_session_events(events_a)
    b = analyze_session_events(events_b)
    deltas_a = a.milestones.deltas()
    deltas_b = b.milestones.deltas()
    milestones = {
        name: {
            "a": deltas_a[name],
            "b": deltas_b[name],
            "diff": (
                deltas_b[name] - deltas_a[name]
                if deltas_a[name] is not None and deltas_b[name] is not None else None
            ),
        }
        for name in deltas_a
    }

    names_a = list(dict.fromkeys(e.event_name for e in events_a))
    names_b = list(dict.fromkeys(e.event_name for e in events_b))
    common = [n for n in names_a if n in set(names_b)]
    only_a = [n for n in names_a if n not in set(names_b)]
    only_b = [n for n in names_b if n not in set(names_a)]

    return {
        "a": {"link_code": link_code_a, **a.to_dict()},
        "b": {"link_code": link_code_b, **b.to_dict()},
        "summary": {
            "a_event_count": len(events_a),
            "b_event_count": len(events_b),
            "a_error_count": sum(1 for e in events_a if e.level >= 4),
            "b_error_count": sum(1 for e in events_b if e.level >= 4),
            "common_event_types": len(common),
            "diff_event_types": len(only_a) + len(only_b),
        },
        "event_types": {"common": common, "only_in_a": only_a, "only_in_b": only_b},
        "milestones": milestones,
        "timeline": _align_timelines(events_a, events_b),
    }
