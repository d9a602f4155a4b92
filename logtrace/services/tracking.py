"""Correlation identifiers pulled out of free-form event payloads.

Each target field has an ordered list of candidate keys. The lookup walks the
payload root first, then its nested ``data`` object; the first candidate that
coerces to a non-empty string wins. Nothing here raises on odd input.
"""
import json
import math
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Callable
from urllib.parse import urlparse, parse_qs

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$|^[0-9A-Fa-f]{12}$")
TOPIC_SN_PREFIXES = ("data/", "data_reply/")


@dataclass(frozen=True)
class TrackingFields:
    device_sn: str | None = None
    device_mac: str | None = None
    link_code: str | None = None
    request_id: str | None = None
    attempt_id: str | None = None
    error_code: str | None = None
    reason_code: str | None = None
    stage: str | None = None
    op: str | None = None
    result: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


TRACKING_FIELD_NAMES = tuple(f.name for f in fields(TrackingFields))


def looks_like_mac(value: str) -> bool:
    return bool(MAC_PATTERN.match(value))


def coerce_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(math.trunc(value))
    return None


def _sn_from_topic(value: str) -> str | None:
    for prefix in TOPIC_SN_PREFIXES:
        if value.startswith(prefix):
            sn = value[len(prefix):].strip()
            if sn:
                return sn
    return None


def _sn_from_url(value: str) -> str | None:
    try:
        query = parse_qs(urlparse(value).query)
    except ValueError:
        return None
    for sn in query.get("sn", []):
        if sn.strip():
            return sn.strip()
    return None


def _non_mac(value: str) -> str | None:
    return None if looks_like_mac(value) else value


def _mac_only(value: str) -> str | None:
    return value if looks_like_mac(value) else None


def _lower(value: str) -> str | None:
    return value.lower()


@dataclass(frozen=True)
class FieldCandidate:
    key: str
    transform: Callable[[str], str | None] | None = None


def _keys(*names: str, transform: Callable[[str], str | None] | None = None) -> list[FieldCandidate]:
    return [FieldCandidate(name, transform) for name in names]


FIELD_CANDIDATES: dict[str, list[FieldCandidate]] = {
    "stage": _keys("stage", "Stage", transform=_lower),
    "op": _keys("op", "Op", transform=_lower),
    "result": _keys("result", "Result", transform=_lower),
    "link_code": _keys("linkCode", "link_code", "LinkCode"),
    "request_id": _keys("requestId", "msgId", "msg_id", "request_id"),
    "attempt_id": _keys("attemptId", "attempt_id"),
    "device_mac": _keys("deviceMac", "DeviceMac", "mac", "deviceId", transform=_mac_only),
    "device_sn": (
        _keys("deviceSn", "sn", "serialNumber", "serial")
        + _keys("deviceId", transform=_non_mac)
        + _keys("topic", transform=_sn_from_topic)
        + _keys("url", "Url", transform=_sn_from_url)
    ),
    "error_code": _keys("errorCode", "ErrorCode", "code"),
    "reason_code": _keys("reasonCode", "reason_code", "ReasonCode"),
}


def _as_object(payload: Any) -> dict | None:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, str):
        text = payload.strip()
        if text.startswith("{") and text.endswith("}"):
            try:
                parsed = json.loads(text)
            except ValueError:
                return None
            return parsed if isinstance(parsed, dict) else None
    return None


def _locations(root: dict, field: str) -> list[dict]:
    data = root.get("data")
    data = data if isinstance(data, dict) else None
    if field == "error_code":
        ordered = [root, root.get("error"), data, data.get("error") if data else None]
    else:
        ordered = [root, data]
    return [loc for loc in ordered if isinstance(loc, dict)]


def _pick(location: dict, candidates: list[FieldCandidate]) -> str | None:
    for candidate in candidates:
        if candidate.key not in location:
            continue
        text = coerce_text(location[candidate.key])
        if text is None:
            continue
        if candidate.transform is not None:
            text = candidate.transform(text)
        if text:
            return text
    return None


def extract_tracking_fields(payload: Any) -> TrackingFields:
    root = _as_object(payload)
    if root is None:
        return TrackingFields()

    found: dict[str, str | None] = {}
    for field, candidates in FIELD_CANDIDATES.items():
        value = None
        for location in _locations(root, field):
            value = _pick(location, candidates)
            if value is not None:
                break
        found[field] = value
    return TrackingFields(**found)


def _unique(values) -> str | None:
    seen: set[str] = set()
    for v in values:
        if v:
            seen.add(v)
            if len(seen) > 1:
                return None
    return next(iter(seen)) if seen else None


def _index(pairs) -> dict[str, set[str]]:
    out: dict[str, set[str]] = {}
    for key, value in pairs:
        if key and value:
            out.setdefault(key, set()).add(value)
    return out


def _resolve(mapping: dict[str, set[str]], key: str | None) -> str | None:
    if not key:
        return None
    values = mapping.get(key)
    if not values or len(values) != 1:
        return None
    return next(iter(values))


def backfill_tracking(items: list[TrackingFields]) -> list[TrackingFields]:
    """Fill missing sn / mac / link code from unambiguous file-wide mappings."""
    sn_by_link = _index((t.link_code, t.device_sn) for t in items)
    sn_by_mac = _index((t.device_mac, t.device_sn) for t in items)
    mac_by_sn = _index((t.device_sn, t.device_mac) for t in items)
    link_by_sn = _index((t.device_sn, t.link_code) for t in items)
    link_by_mac = _index((t.device_mac, t.link_code) for t in items)
    unique_sn = _unique(t.device_sn for t in items)
    unique_mac = _unique(t.device_mac for t in items)

    filled: list[TrackingFields] = []
    for t in items:
        sn, mac, link = t.device_sn, t.device_mac, t.link_code
        if not sn:
            sn = _resolve(sn_by_link, link) or _resolve(sn_by_mac, mac) or unique_sn
        if not mac:
            mac = _resolve(mac_by_sn, sn) or unique_mac
        if not link:
            link = _resolve(link_by_sn, sn) or _resolve(link_by_mac, mac)
        if (sn, mac, link) == (t.device_sn, t.device_mac, t.link_code):
            filled.append(t)
        else:
            filled.append(replace(t, device_sn=sn, device_mac=mac, link_code=link))
    return filled
