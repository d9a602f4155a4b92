"""Vocabulary shared by the Bluetooth session, command and anomaly views."""
import json
from typing import Any

BLE_PHASE_PATTERNS: dict[str, tuple[str, ...]] = {
    "scan": ("SCAN_START", "SCAN_DEVICE", "DEVICE_FOUND", "BLE scan"),
    "pair": ("PAIR_START", "PAIRING", "BOND", "BLE pair"),
    "connect": ("CONNECT_START", "CONNECTING", "GATT_CONNECT", "BLE connect"),
    "connected": ("CONNECTED", "CONNECTION_SUCCESS", "GATT_CONNECTED", "BLE connected"),
    "disconnect": ("DISCONNECT", "DISCONNECTED", "CONNECTION_LOST", "BLE disconnect"),
    "error": ("ERROR", "FAILED", "TIMEOUT", "Exception"),
}

MSG_PREVIEW_LENGTH = 200


def matches_pattern(event_name: str, patterns) -> bool:
    upper = event_name.upper()
    return any(p.upper() in upper for p in patterns)


def normalize_lower(value: str | None) -> str | None:
    text = (value or "").strip()
    return text.lower() if text else None


def is_op(event, stage: str, op: str, result: str | None = None) -> bool:
    if normalize_lower(event.stage) != stage or normalize_lower(event.op) != op:
        return False
    if result is None:
        return True
    return normalize_lower(event.result) == result


def is_ble_op(event, op: str, result: str | None = None) -> bool:
    return is_op(event, "ble", op, result)


def _has_structure(event) -> bool:
    return bool(event.stage or event.op or event.result)


def is_ble_disconnect_event(event) -> bool:
    if event.stage or event.op:
        return is_ble_op(event, "disconnect")
    return matches_pattern(event.event_name, BLE_PHASE_PATTERNS["disconnect"])


def is_ble_connect_start_event(event) -> bool:
    if _has_structure(event):
        return is_ble_op(event, "connect", "start")
    return matches_pattern(event.event_name, BLE_PHASE_PATTERNS["connect"])


def is_ble_connect_success_event(event) -> bool:
    if _has_structure(event):
        return is_ble_op(event, "connect", "ok")
    return matches_pattern(event.event_name, BLE_PHASE_PATTERNS["connected"])


def msg_preview(msg: Any, max_length: int = MSG_PREVIEW_LENGTH) -> str | None:
    if msg is None or msg == "" or msg == {} or msg == []:
        return None
    if isinstance(msg, str):
        return msg[:max_length]
    if isinstance(msg, (dict, list)):
        text = json.dumps(msg, ensure_ascii=False, default=str)
        return f"{text[:max_length]}..." if len(text) > max_length else text
    return str(msg)[:max_length]
