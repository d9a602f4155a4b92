"""Two-level envelope parser for SDK log lines.

Outer line: ``{"c": <inner json>, "f": level, "l": epoch_ms, "n": thread,
"i": thread_id, "m": is_main}``. Inner: ``{"event": ..., "msg": ...,
"sdkInfo": ..., "appInfo": ..., "terminalInfo": ...}``.
"""
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from logtrace.services.tracking import TrackingFields, extract_tracking_fields

logger = logging.getLogger(__name__)

HEADER_CONTENTS = {"clogan header", "logan header"}
HEADER_CHANNELS = {"clogan", "logan"}
MAX_INVALID_SAMPLES = 20
ERROR_LEVEL = 3

# Column ranges: level is an Integer, timestamp and thread id are BigInteger
INT32_RANGE = (-(2**31), 2**31 - 1)
INT64_RANGE = (-(2**63), 2**63 - 1)


@dataclass
class ParsedEvent:
    line_number: int
    timestamp_ms: int
    level: int
    event_name: str
    msg: Any
    raw_line: str
    tracking: TrackingFields
    sdk_version: str | None = None
    app_id: str | None = None
    terminal_info: str | None = None
    thread_name: str | None = None
    thread_id: int | None = None
    is_main_thread: bool | None = None


@dataclass
class InvalidLine:
    line_number: int
    reason: str


@dataclass
class ParseResult:
    events: list[ParsedEvent] = field(default_factory=list)
    total_lines: int = 0
    header_lines: int = 0
    invalid_lines: int = 0
    invalid_samples: list[InvalidLine] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.events)

    @property
    def error_count(self) -> int:
        return sum(1 for e in self.events if e.level >= ERROR_LEVEL)


class LineRejected(ValueError):
    pass


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return value
    return None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _bounded(value: float, bounds: tuple[int, int], name: str) -> int:
    number = math.trunc(value)
    low, high = bounds
    if not low <= number <= high:
        raise LineRejected(f"outer.{name} out of range")
    return number


def deep_parse_msg(msg: Any) -> Any:
    """Decode a msg string that holds a JSON object; otherwise return it as-is."""
    if not isinstance(msg, str):
        return msg
    text = msg.strip()
    if not (text.startswith("{") and text.endswith("}")):
        return msg
    try:
        return json.loads(text)
    except ValueError:
        return msg


def is_header(outer: dict) -> bool:
    content = _text(outer.get("c")) or ""
    channel = _text(outer.get("n")) or ""
    return (
        content.strip().lower() in HEADER_CONTENTS
        or channel.strip().lower() in HEADER_CHANNELS
    )


def parse_line(line: str, line_number: int) -> ParsedEvent | None:
    """Parse one line. Returns None for header records, raises LineRejected for bad lines."""
    try:
        outer = json.loads(line)
    except ValueError:
        raise LineRejected("invalid JSON")
    if not isinstance(outer, dict):
        raise LineRejected("outer is not an object")

    if is_header(outer):
        return None

    content = _text(outer.get("c"))
    level = _number(outer.get("f"))
    timestamp = _number(outer.get("l"))
    if not content:
        raise LineRejected("missing outer.c")
    if not level:
        raise LineRejected("missing outer.f")
    if not timestamp:
        raise LineRejected("missing outer.l")

    try:
        inner = json.loads(content)
    except ValueError:
        raise LineRejected("inner is not valid JSON")
    if not isinstance(inner, dict):
        raise LineRejected("inner is not an object")

    event_name = _text(inner.get("event"))
    if not event_name or not event_name.strip():
        raise LineRejected("missing inner.event")

    level = _bounded(level, INT32_RANGE, "f")
    timestamp = _bounded(timestamp, INT64_RANGE, "l")
    thread_id = _number(outer.get("i"))
    if thread_id is not None:
        thread_id = _bounded(thread_id, INT64_RANGE, "i")

    msg = deep_parse_msg(inner.get("msg"))

    return ParsedEvent(
        line_number=line_number,
        timestamp_ms=timestamp,
        level=level,
        event_name=event_name,
        msg=msg,
        raw_line=line,
        tracking=extract_tracking_fields(msg),
        sdk_version=_text(inner.get("sdkInfo")),
        app_id=_text(inner.get("appInfo")),
        terminal_info=_text(inner.get("terminalInfo")),
        thread_name=_text(outer.get("n")),
        thread_id=thread_id,
        is_main_thread=_flag(outer.get("m")),
    )


def parse_text(text: str) -> ParseResult:
    """Parse decoded text; bad lines are counted, never raised."""
    result = ParseResult()
    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        result.total_lines += 1
        try:
            event = parse_line(line, line_number)
        except LineRejected as e:
            result.invalid_lines += 1
            if len(result.invalid_samples) < MAX_INVALID_SAMPLES:
                result.invalid_samples.append(InvalidLine(line_number, str(e)))
            continue
        if event is None:
            result.header_lines += 1
            continue
        result.events.append(event)

    # sorted() is stable, so equal timestamps keep line order
    result.events = sorted(result.events, key=lambda e: e.timestamp_ms)
    if result.invalid_lines:
        logger.info(
            "Parsed %d events, skipped %d invalid lines",
            len(result.events), result.invalid_lines,
        )
    return result
