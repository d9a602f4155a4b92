"""Anomaly scanners, error distribution and error context."""
from logtrace.services.anomalies import (
    ScanWindow,
    Scanner,
    analyze_connection_flow,
    classify_error,
    detect_anomalies,
    error_context,
    error_distribution,
    find_event_clusters,
    generate_recommendations,
    run_scanners,
    scan_slow_connection,
    scan_volume_spike,
)
from logtrace.models import LogFile
from logtrace.models.log_event import PARSER_ERROR_EVENT
from logtrace.services.ingestion import process_log_file
from logtrace.services.sessions import refresh_sessions

from conftest import BASE_TS, PROJECT_ID, add_events, fake_event, make_line

WINDOW = (BASE_TS, BASE_TS + 3_600_000)


def _window(events, clustered=False, sessions=()):
    return ScanWindow(events=events, sessions=list(sessions), start_ms=0, end_ms=3_600_000, clustered=clustered)


class TestClassifyError:
    def test_known_pattern(self):
        result = classify_error("write", "GATT_ERROR")
        assert (result["category"], result["severity"], result["matched"]) == ("gatt_error", 4, True)

    def test_fallbacks(self):
        assert classify_error("sync TIMEOUT", None)["category"] == "timeout"
        assert classify_error("upload failed", None)["category"] == "general_error"
        assert classify_error("BLE disconnect", None)["category"] == "disconnect"
        assert classify_error("mystery", None)["category"] == "unknown"


class TestClusters:
    def test_runs_anchor_on_first_event(self):
        events = [fake_event("e", ts) for ts in (0, 10, 20, 100, 500, 510)]
        clusters = find_event_clusters(events, 50)
        assert [[e.timestamp_ms for e in c] for c in clusters] == [[0, 10, 20], [500, 510]]

    def test_empty(self):
        assert find_event_clusters([], 10) == []


class TestScanners:
    def test_failing_scanner_is_isolated(self):
        def explode(window):
            raise RuntimeError("bad scanner")

        scanners = (Scanner("boom", explode), Scanner("ok", lambda w: []))
        patterns, failed = run_scanners(_window([]), scanners)
        assert patterns == []
        assert failed == ["boom"]

    def test_slow_connection(self):
        sessions = [
            fake_event("s", 0, link_code="L1", scan_start_ms=0, connected_ms=12_000),
            fake_event("s", 0, link_code="L2", scan_start_ms=0, connected_ms=2_000),
        ]
        patterns = scan_slow_connection(_window([], sessions=sessions))
        assert len(patterns) == 1
        assert patterns[0].affected_sessions == ["L1"]

    def test_volume_spike_needs_enough_buckets(self):
        events = [fake_event("e", i * 60_000, id=i) for i in range(4)]
        assert scan_volume_spike(_window(events)) == []

    def test_volume_spike_flags_burst_minute(self):
        events = []
        for minute in range(10):
            events += [fake_event("tick", minute * 60_000 + j, id=len(events) + 1) for j in range(2)]
        burst_start = 10 * 60_000
        events += [fake_event("tick", burst_start + j, id=len(events) + 1, level=4) for j in range(50)]

        patterns = scan_volume_spike(_window(events))
        assert len(patterns) == 1
        assert patterns[0].occurrence_count == 50
        assert patterns[0].severity == 4


class TestDetectAnomalies:
    def _seed(self, db_session, log_file):
        ble = {"stage": "ble", "device_mac": "M1", "link_code": "L1"}
        rows = [(f"BLE disconnect {i}", i * 1_000, 2, {**ble, "op": "disconnect"}) for i in range(3)]
        rows += [(f"write failed {i}", 100_000 + i * 100, 4, {"link_code": "L2"}) for i in range(5)]
        add_events(db_session, log_file, rows)

    def test_basic_mode(self, db_session, log_file):
        self._seed(db_session, log_file)
        result = detect_anomalies(db_session, PROJECT_ID, *WINDOW)
        types = {p["pattern_type"]: p for p in result["patterns"]}
        assert types["frequent_disconnect"]["severity"] == 3
        assert types["error_burst"]["occurrence_count"] == 5
        assert result["summary"]["disconnect_events"] == 3
        assert result["failed_scanners"] == []
        assert "recommendations" not in result

    def test_enhanced_mode(self, db_session, log_file):
        self._seed(db_session, log_file)
        result = detect_anomalies(db_session, PROJECT_ID, *WINDOW, enhanced=True)
        types = {p["pattern_type"]: p for p in result["patterns"]}
        assert types["frequent_disconnect"]["severity"] == 4
        assert types["frequent_disconnect"]["time_window_ms"] == 2_000
        assert "mostly general_error" in types["error_burst"]["description"]
        assert result["summary"]["total_anomalies"] == len(result["patterns"])
        assert result["summary"]["affected_sessions_count"] == 2
        assert result["recommendations"]

    def test_invalid_lines_do_not_count_as_errors(self, db_session, tmp_path):
        path = tmp_path / "broken.log"
        path.write_text("\n".join(
            [make_line("BLE start searching", BASE_TS), make_line("BLE search success", BASE_TS + 10)]
            + ["not json"] * 6
        ))
        lf = LogFile(project_id=PROJECT_ID, filename="broken.log", stored_path=str(path), size_bytes=1)
        db_session.add(lf)
        db_session.commit()
        process_log_file(db_session, lf.id)

        result = detect_anomalies(db_session, PROJECT_ID, *WINDOW)
        assert result["summary"]["total_events"] == 2
        assert result["summary"]["error_events"] == 0

    def test_markers_do_not_form_an_error_burst(self, db_session, log_file):
        add_events(db_session, log_file, [(PARSER_ERROR_EVENT, i * 10, 4, {}) for i in range(6)])
        result = detect_anomalies(db_session, PROJECT_ID, *WINDOW)
        assert result["patterns"] == []

    def test_sessions_feed_slow_connection(self, db_session, log_file):
        add_events(db_session, log_file, [
            ("SCAN_START", 0, 2, {"link_code": "L1"}),
            ("GATT_CONNECTED", 15_000, 2, {"link_code": "L1"}),
        ])
        refresh_sessions(db_session, PROJECT_ID, ["L1"])
        result = detect_anomalies(db_session, PROJECT_ID, *WINDOW)
        assert [p["pattern_type"] for p in result["patterns"]] == ["slow_connection"]


class TestRecommendations:
    def test_nothing_found(self):
        assert generate_recommendations([]) == ["No significant issues detected. System is operating normally."]


class TestErrorDistribution:
    def test_groups(self, db_session, log_file):
        add_events(db_session, log_file, [
            ("write failed", 0, 4, {"error_code": "E1"}),
            ("write failed", 50, 4, {"error_code": "E1"}),
            ("warn", 10, 3, {}),
            ("info with code", 20, 2, {"error_code": "E2"}),
            ("info", 30, 2, {}),
        ])
        result = error_distribution(db_session, PROJECT_ID, *WINDOW)
        assert result["total"] == 4
        assert result["by_error_code"][0] == {"code": "E1", "count": 2, "last_seen": BASE_TS + 50}
        assert {c["code"] for c in result["by_error_code"]} == {"E1", "E2", "UNKNOWN"}
        assert result["by_level"] == [{"level": 4, "count": 2}, {"level": 3, "count": 1}, {"level": 2, "count": 1}]

    def test_parser_markers_are_not_errors(self, db_session, log_file):
        add_events(db_session, log_file, [(PARSER_ERROR_EVENT, i, 4, {}) for i in range(6)])
        assert error_distribution(db_session, PROJECT_ID, *WINDOW)["total"] == 0


class TestErrorContext:
    def test_context_and_related(self, db_session, log_file):
        events = add_events(db_session, log_file, [
            ("SCAN_START", 0, 2, {"link_code": "L1"}),
            ("GATT_CONNECT", 10, 2, {"link_code": "L1"}),
            ("GATT_ERROR on write", 20, 4, {"link_code": "L1", "error_code": "133"}),
            ("cleanup", 30, 2, {}),
        ])
        target = events[2]
        result = error_context(db_session, PROJECT_ID, target.id, context_size=1)

        assert [e["event_name"] for e in result["context"]["before"]] == ["GATT_CONNECT"]
        assert [e["event_name"] for e in result["context"]["after"]] == ["cleanup"]
        assert result["analysis"]["category"] == "gatt_error"
        assert result["analysis"]["related_count"] == 3
        assert result["analysis"]["flow_context"]["flow_type"] == "error"

    def test_same_millisecond_neighbours(self, db_session, log_file):
        events = add_events(db_session, log_file, [
            ("write start", 10, 2, {}),
            ("GATT_ERROR on write", 10, 4, {}),
            ("write retry", 10, 2, {}),
        ])
        result = error_context(db_session, PROJECT_ID, events[1].id)
        assert [e["event_name"] for e in result["context"]["before"]] == ["write start"]
        assert [e["event_name"] for e in result["context"]["after"]] == ["write retry"]

    def test_unknown_event(self, db_session):
        assert error_context(db_session, PROJECT_ID, 12345) is None

    def test_flow_without_known_steps(self):
        flow = analyze_connection_flow([fake_event("hello", 1)])
        assert flow["flow_type"] == "incomplete"
