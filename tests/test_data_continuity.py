"""Data continuity counters by kind, device, link code and request id."""
from logtrace.services.data_continuity import analyze_data_continuity, build_data_continuity_report

from conftest import add_events, fake_event


def _issue(ts, code, **fields):
    return fake_event("data stream", ts, error_code=code, **fields)


EVENTS = [
    _issue(1, "DATA_STREAM_ORDER_BROKEN", device_sn="SN1", link_code="L1", request_id="R1"),
    _issue(2, "DATA_STREAM_OUT_OF_ORDER_BUFFERED", device_sn="SN1", link_code="L1"),
    _issue(3, "DATA_STREAM_DUPLICATE_DROPPED", device_sn="SN2", request_id="R2"),
    _issue(4, "DATA_PERSIST_TIMEOUT", device_sn="SN2", link_code="  ", request_id="R2"),
    _issue(5, "V3_RT_BUFFER_DROP", device_sn="SN2", request_id="R3"),
    _issue(6, "BLE_SCAN_FAILED", device_sn="SN3"),
    fake_event("no code", 7),
]


class TestBuildReport:
    def test_summary(self):
        summary = build_data_continuity_report(EVENTS)["summary"]
        assert summary["total"] == 5
        assert (summary["order_broken"], summary["out_of_order_buffered"], summary["duplicate_dropped"]) == (3, 1, 1)
        assert (summary["persist_timeout"], summary["rt_buffer_drop"]) == (1, 1)
        assert summary["issues_missing_device_sn"] == 0
        assert summary["issues_missing_link_code"] == 3
        assert summary["issues_missing_request_id"] == 1

    def test_groups_sorted_by_total(self):
        report = build_data_continuity_report(EVENTS)
        assert [(r["device_sn"], r["total"]) for r in report["by_device"]] == [("SN2", 3), ("SN1", 2)]
        sn2 = report["by_device"][0]
        assert (sn2["order_broken"], sn2["duplicate_dropped"], sn2["persist_timeout"], sn2["rt_buffer_drop"]) == (1, 1, 1, 1)
        assert report["by_link_code"] == [{
            "link_code": "L1", "total": 2, "order_broken": 2, "out_of_order_buffered": 1,
            "duplicate_dropped": 0, "persist_timeout": 0, "rt_buffer_drop": 0,
        }]
        assert [r["request_id"] for r in report["by_request_id"]] == ["R2", "R1", "R3"]

    def test_top_limit(self):
        report = build_data_continuity_report(EVENTS, top_limit=1)
        assert [r["request_id"] for r in report["by_request_id"]] == ["R2"]

    def test_empty(self):
        report = build_data_continuity_report([])
        assert report["summary"]["total"] == 0
        assert report["by_device"] == []


class TestAnalyzeFile:
    def test_reads_only_continuity_codes(self, db_session, log_file):
        add_events(db_session, log_file, [
            ("stream", 0, 3, {"error_code": "DATA_PERSIST_TIMEOUT", "device_sn": "SN1"}),
            ("stream", 10, 3, {"error_code": "V3_RT_BUFFER_DROP", "device_sn": "SN1"}),
            ("other", 20, 4, {"error_code": "AUTH_FAIL", "device_sn": "SN1"}),
        ])
        report = analyze_data_continuity(db_session, log_file.id)
        assert report["summary"]["total"] == 2
        assert report["by_device"][0]["device_sn"] == "SN1"
