"""HTTP and MQTT health of the app's backend traffic within one log file.

HTTP requests are folded by ``request_id`` from the ``network_request_*``
events. MQTT traffic is classified from the structured ``stage/op/result``
fields of ``stage == "mqtt"`` events.
"""
import logging
import math
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from logtrace.models.log_event import LogEvent
from logtrace.services.ble import normalize_lower
from logtrace.services.commands import clamp, percentile
from logtrace.services.stream_quality import message_text
from logtrace.services.tracking import TOPIC_SN_PREFIXES, coerce_text

logger = logging.getLogger(__name__)

HTTP_START = "network_request_start"
HTTP_SUCCESS = "network_request_success"
HTTP_FAILED = "network_request_failed"
HTTP_EVENTS = (HTTP_START, HTTP_SUCCESS, HTTP_FAILED)

ACK_TIMEOUT_CODE = "ACK_TIMEOUT"
UNKNOWN_DEVICE = "(unknown)"
UNKNOWN_PATH = "(unknown)"
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
ENDPOINT_LIMIT = 20
DEVICE_LIMIT = 20
SN_MAX_LENGTH = 128

MQTT_KINDS: dict[tuple[str, str], str] = {
    ("publish", "start"): "upload_batch_sent",
    ("publish", "ok"): "publish_success",
    ("publish", "fail"): "publish_failed",
    ("publish", "skip"): "upload_skipped_not_connected",
    ("ack", "timeout"): "ack_timeout",
    ("ack", "ok"): "ack_success",
    ("ack", "fail"): "ack_failed",
    ("subscribe", "fail"): "subscribe_failed",
    ("connect", "ok"): "connected",
    ("connect", "fail"): "disconnected",
}
DEVICE_ISSUE_KINDS = ("upload_skipped_not_connected", "publish_failed", "ack_failed", "ack_timeout")
ISSUE_KINDS = DEVICE_ISSUE_KINDS + ("subscribe_failed",)


def _number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value) if float(value).is_integer() else value
    return None


def _first_text(obj: dict, keys) -> str | None:
    for key in keys:
        text = coerce_text(obj.get(key))
        if text:
            return text
    return None


def normalize_device_sn(value: str | None) -> str | None:
    text = (value or "").strip()
    text = text.lstrip("\"'([{<").rstrip("\"')]}>").rstrip(",:;").strip()
    return text[:SN_MAX_LENGTH] or None


def device_sn_from_topic(topic: str | None) -> str | None:
    """First path segment after a ``data/`` or ``data_reply/`` prefix."""
    topic = (topic or "").strip()
    for prefix in TOPIC_SN_PREFIXES:
        if topic.startswith(prefix):
            rest = topic[len(prefix):].strip()
            if rest:
                return normalize_device_sn(rest.split("/")[0])
    return None


def url_path(url: str | None) -> str:
    if not url:
        return UNKNOWN_PATH
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return parsed.path or "/"
    return url.split("?")[0].strip() or UNKNOWN_PATH


def _http_requests(events) -> dict[str, dict[str, Any]]:
    requests: dict[str, dict[str, Any]] = {}
    for event in events:
        request_id = (event.request_id or "").strip()
        if not request_id:
            continue
        msg = event.msg_json if isinstance(event.msg_json, dict) else {}
        req = requests.setdefault(request_id, {
            "request_id": request_id,
            "method": None,
            "url": None,
            "start_ms": None,
            "success_ms": None,
            "failed_ms": None,
            "status_code": None,
            "took_ms": None,
        })
        req["method"] = req["method"] or _first_text(msg, ("method",))
        req["url"] = req["url"] or _first_text(msg, ("url", "requestUrl"))

        ts = event.timestamp_ms
        if event.event_name == HTTP_START:
            if req["start_ms"] is None or ts < req["start_ms"]:
                req["start_ms"] = ts
            continue
        end_key = "success_ms" if event.event_name == HTTP_SUCCESS else "failed_ms"
        if req[end_key] is None or ts > req[end_key]:
            req[end_key] = ts
        for key, msg_key in (("status_code", "statusCode"), ("took_ms", "tookMs")):
            value = _number(msg.get(msg_key))
            if value is not None:
                req[key] = value
    return requests


def _http_report(events, list_limit: int) -> tuple[dict[str, Any], dict[str, Any]]:
    requests = _http_requests(events)
    summary = {"total": len(requests), "success": 0, "failed": 0, "missing_end": 0,
               "took_ms_avg": None, "took_ms_p95": None}
    endpoints: dict[tuple, dict[str, Any]] = {}
    failed, missing_end, took = [], [], []

    for req in requests.values():
        path = url_path(req["url"])
        endpoint = endpoints.setdefault((req["method"] or "", path), {
            "method": req["method"], "path": path, "total": 0, "success": 0, "failed": 0,
        })
        endpoint["total"] += 1

        if req["success_ms"] is not None:
            summary["success"] += 1
            endpoint["success"] += 1
        elif req["failed_ms"] is not None:
            summary["failed"] += 1
            endpoint["failed"] += 1
            failed.append({
                "request_id": req["request_id"],
                "timestamp_ms": req["failed_ms"],
                "method": req["method"],
                "url": req["url"],
                "status_code": req["status_code"],
                "took_ms": req["took_ms"],
            })
        else:
            summary["missing_end"] += 1
            missing_end.append({
                "request_id": req["request_id"],
                "start_timestamp_ms": req["start_ms"] if req["start_ms"] is not None else 0,
                "method": req["method"],
                "url": req["url"],
            })
            continue
        if req["took_ms"] is not None:
            took.append(req["took_ms"])

    if took:
        summary["took_ms_avg"] = sum(took) / len(took)
        summary["took_ms_p95"] = percentile(sorted(took), 95)

    failed.sort(key=lambda r: -r["timestamp_ms"])
    missing_end.sort(key=lambda r: -r["start_timestamp_ms"])
    detail = {
        "endpoints": sorted(endpoints.values(), key=lambda e: (-e["failed"], -e["total"]))[:ENDPOINT_LIMIT],
        "failed_requests": failed[:list_limit],
        "missing_end_requests": missing_end[:list_limit],
    }
    return summary, detail


def classify_mqtt_event(event) -> str | None:
    if normalize_lower(event.stage) != "mqtt":
        return None
    op, result = normalize_lower(event.op), normalize_lower(event.result)
    if not op or not result:
        return None
    if op == "ack" and (event.error_code or "").strip() == ACK_TIMEOUT_CODE:
        return "ack_timeout"
    return MQTT_KINDS.get((op, result))


def _mqtt_fields(msg: Any) -> dict[str, str | None]:
    fields = {"msg_id": None, "topic": None, "device_sn": None}
    if not isinstance(msg, dict):
        return fields
    locations = [msg] + ([msg["data"]] if isinstance(msg.get("data"), dict) else [])
    for location in locations:
        fields["msg_id"] = fields["msg_id"] or _first_text(location, ("msgId",))
        fields["topic"] = fields["topic"] or _first_text(location, ("topic",))
        fields["device_sn"] = fields["device_sn"] or (
            normalize_device_sn(_first_text(location, ("deviceSn",))) or device_sn_from_topic(fields["topic"])
        )
    return fields


def _mqtt_report(events, list_limit: int) -> tuple[dict[str, Any], dict[str, Any]]:
    summary = {kind: 0 for kind in MQTT_KINDS.values()}
    summary["issues_missing_device_sn"] = 0
    by_device: dict[str, dict[str, Any]] = {}
    ack_timeouts, publish_failures = [], []

    for event in events:
        text = message_text(event.msg_json)
        if not text:
            continue
        kind = classify_mqtt_event(event)
        if kind is None:
            continue
        fields = _mqtt_fields(event.msg_json)
        device_sn = normalize_device_sn(event.device_sn) or fields["device_sn"]
        msg_id = fields["msg_id"] or event.request_id

        summary[kind] += 1
        if kind in ISSUE_KINDS and not device_sn:
            summary["issues_missing_device_sn"] += 1
        if kind in DEVICE_ISSUE_KINDS:
            row = by_device.setdefault(device_sn or UNKNOWN_DEVICE, {
                "device_sn": device_sn or UNKNOWN_DEVICE, **{k: 0 for k in DEVICE_ISSUE_KINDS},
            })
            row[kind] += 1

        item = {"timestamp_ms": event.timestamp_ms, "device_sn": device_sn, "msg_id": msg_id}
        if kind == "ack_timeout":
            ack_timeouts.append({**item, "message": text})
        elif kind == "publish_failed":
            publish_failures.append({**item, "topic": fields["topic"], "message": text})

    devices = [row for row in by_device.values() if row["device_sn"] != UNKNOWN_DEVICE]
    devices.sort(key=lambda r: (-sum(r[k] for k in DEVICE_ISSUE_KINDS), -r["ack_timeout"]))
    ack_timeouts.sort(key=lambda r: -r["timestamp_ms"])
    publish_failures.sort(key=lambda r: -r["timestamp_ms"])
    detail = {
        "issues_by_device": devices[:DEVICE_LIMIT],
        "ack_timeouts": ack_timeouts[:list_limit],
        "publish_failures": publish_failures[:list_limit],
    }
    return summary, detail


def build_backend_quality_report(http_events, mqtt_events, list_limit: int | None = None) -> dict[str, Any]:
    list_limit = clamp(list_limit, DEFAULT_LIST_LIMIT, 1, MAX_LIST_LIMIT)
    http_summary, http_detail = _http_report(http_events, list_limit)
    mqtt_summary, mqtt_detail = _mqtt_report(mqtt_events, list_limit)
    return {
        "summary": {"http": http_summary, "mqtt": mqtt_summary},
        "http": http_detail,
        "mqtt": mqtt_detail,
    }


def analyze_backend_quality(db: Session, log_file_id: int, list_limit: int | None = None) -> dict[str, Any]:
    ordered = (LogEvent.timestamp_ms, LogEvent.id)
    http_events = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.event_name.in_(HTTP_EVENTS))
        .order_by(*ordered)
    ).scalars().all()
    mqtt_events = db.execute(
        select(LogEvent)
        .where(LogEvent.log_file_id == log_file_id, LogEvent.stage == "mqtt")
        .order_by(*ordered)
    ).scalars().all()
    report = build_backend_quality_report(http_events, mqtt_events, list_limit)
    logger.info(
        "Backend quality: %d HTTP requests, %d MQTT events",
        report["summary"]["http"]["total"], len(mqtt_events),
        extra={"log_file_id": log_file_id},
    )
    return report
