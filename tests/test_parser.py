"""Unit tests for logtrace.services.parser (no DB required)."""
import json

import pytest

from logtrace.services.parser import LineRejected, MAX_INVALID_SAMPLES, parse_line, parse_text

from conftest import make_line


def _outer(**fields):
    return json.dumps(fields)


class TestParseLine:
    def test_full_envelope(self):
        line = make_line("BLE start connection", 1_700_000_000_123, level=2,
                         linkCode="L9", deviceMac="AA:BB:CC:DD:EE:FF", stage="BLE", op="Connect", result="Start")
        event = parse_line(line, 7)
        assert event.line_number == 7
        assert event.timestamp_ms == 1_700_000_000_123
        assert event.level == 2
        assert event.event_name == "BLE start connection"
        assert event.sdk_version == "2.4.1"
        assert event.app_id == "com.example.cgm"
        assert event.thread_name == "main"
        assert event.thread_id == 1
        assert event.is_main_thread is True
        assert event.tracking.link_code == "L9"
        assert event.tracking.device_mac == "AA:BB:CC:DD:EE:FF"
        assert (event.tracking.stage, event.tracking.op, event.tracking.result) == ("ble", "connect", "start")

    def test_float_level_and_timestamp_truncate(self):
        inner = json.dumps({"event": "X"})
        event = parse_line(_outer(c=inner, f=3.9, l=1700000000123.7), 1)
        assert event.level == 3
        assert event.timestamp_ms == 1700000000123

    def test_msg_string_holding_json_is_decoded(self):
        inner = json.dumps({"event": "MQTT publish", "msg": json.dumps({"requestId": "R7"})})
        event = parse_line(_outer(c=inner, f=2, l=1), 1)
        assert event.msg == {"requestId": "R7"}
        assert event.tracking.request_id == "R7"

    def test_plain_msg_string_kept(self):
        inner = json.dumps({"event": "note", "msg": "just text"})
        assert parse_line(_outer(c=inner, f=2, l=1), 1).msg == "just text"

    @pytest.mark.parametrize("header", [
        {"c": "clogan header", "f": 1, "l": 1},
        {"c": "  Logan Header ", "f": 1, "l": 1},
        {"c": "anything", "n": "clogan"},
        {"c": "", "n": "LOGAN", "f": 0},
    ])
    def test_header_returns_none(self, header):
        assert parse_line(json.dumps(header), 1) is None

    @pytest.mark.parametrize("line,reason", [
        ("not json", "invalid JSON"),
        ("[1, 2]", "outer is not an object"),
        (json.dumps({"f": 2, "l": 1}), "missing outer.c"),
        (json.dumps({"c": "{}", "f": 0, "l": 1}), "missing outer.f"),
        (json.dumps({"c": "{}", "f": True, "l": 1}), "missing outer.f"),
        (json.dumps({"c": "{}", "f": 2}), "missing outer.l"),
        (json.dumps({"c": "not json", "f": 2, "l": 1}), "inner is not valid JSON"),
        (json.dumps({"c": "[]", "f": 2, "l": 1}), "inner is not an object"),
        (json.dumps({"c": json.dumps({"event": "  "}), "f": 2, "l": 1}), "missing inner.event"),
        (json.dumps({"c": json.dumps({"event": "x"}), "f": 2, "l": 10**20}), "outer.l out of range"),
        (json.dumps({"c": json.dumps({"event": "x"}), "f": 2, "l": 1e300}), "outer.l out of range"),
        (json.dumps({"c": json.dumps({"event": "x"}), "f": 2**40, "l": 1}), "outer.f out of range"),
        (json.dumps({"c": json.dumps({"event": "x"}), "f": 2, "l": 1, "i": -(2**70)}), "outer.i out of range"),
    ])
    def test_rejected_lines(self, line, reason):
        with pytest.raises(LineRejected, match=reason):
            parse_line(line, 1)


class TestParseText:
    def test_counts_and_stable_sort(self):
        lines = [
            make_line("third", 300),
            json.dumps({"c": "clogan header", "f": 1, "l": 1}),
            make_line("first", 100),
            "garbage",
            make_line("second-a", 200),
            "",
            make_line("second-b", 200),
        ]
        result = parse_text("\n".join(lines))
        assert result.total_lines == 6
        assert result.header_lines == 1
        assert result.invalid_lines == 1
        assert result.invalid_samples[0].line_number == 4
        assert [e.event_name for e in result.events] == ["first", "second-a", "second-b", "third"]

    def test_error_count_uses_level_three_and_up(self):
        text = "\n".join([make_line("a", 1, level=2), make_line("b", 2, level=3), make_line("c", 3, level=4)])
        result = parse_text(text)
        assert result.event_count == 3
        assert result.error_count == 2

    def test_invalid_samples_are_capped(self):
        result = parse_text("\n".join("bad" for _ in range(MAX_INVALID_SAMPLES + 5)))
        assert result.invalid_lines == MAX_INVALID_SAMPLES + 5
        assert len(result.invalid_samples) == MAX_INVALID_SAMPLES
        assert result.events == []
