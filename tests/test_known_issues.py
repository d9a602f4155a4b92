"""Known-issue matching, CRUD and stored reports."""
import pytest

from logtrace.core.errors import ApiError, BatchTooLarge
from logtrace.models import KnownIssue
from logtrace.services.known_issues import (
    MAX_BATCH_EVENTS,
    MatchInput,
    create_issue,
    list_issues,
    match_batch,
    match_event,
    match_issue,
    match_log_file,
    update_issue,
)
from logtrace.services.reports import generate_report, list_reports, report_to_markdown
from logtrace.services.sessions import refresh_sessions

from conftest import BASE_TS, PROJECT_ID, add_events


def _hits(db, issues):
    for issue in issues:
        db.refresh(issue)
    return [issue.hit_count for issue in issues]


class TestMatchIssue:
    def test_rule_precedence(self):
        issue = KnownIssue(id=1, title="t", error_code="E1", event_pattern="boom", msg_pattern="x")
        assert match_issue(issue, MatchInput("boom", error_code="E1")).match_type == "errorCode"
        assert match_issue(issue, MatchInput("BOOM now")).match_type == "eventPattern"
        result = match_issue(issue, MatchInput("calm", msg="has X inside"))
        assert (result.match_type, result.confidence) == ("msgPattern", 0.8)
        assert match_issue(issue, MatchInput("calm")) is None

    def test_invalid_pattern_is_skipped(self):
        issue = KnownIssue(id=2, title="bad", event_pattern="([", msg_pattern="ok")
        result = match_issue(issue, MatchInput("anything", msg="ok then"))
        assert result.match_type == "msgPattern"


class TestMatchEvent:
    def test_all_rules_fire_in_severity_order(self, db_session, seed_issues):
        matches = match_event(db_session, PROJECT_ID, MatchInput(
            "BLE search fail", error_code="AUTH_FAIL", msg='{"gattStatus": 133}'
        ))
        assert [m.issue.title for m in matches] == ["Auth key rejected", "Scan never finishes", "GATT 133"]
        assert _hits(db_session, seed_issues) == [1, 1, 1]

    def test_inactive_and_other_projects_ignored(self, db_session, seed_issues):
        seed_issues[0].is_active = False
        db_session.commit()
        assert match_event(db_session, PROJECT_ID, MatchInput("x", error_code="AUTH_FAIL")) == []
        assert match_event(db_session, PROJECT_ID + 1, MatchInput("BLE search fail")) == []


class TestMatchBatch:
    def test_hit_counts_increment_once_per_batch(self, db_session, seed_issues):
        events = [
            MatchInput("BLE search fail", id="a"),
            MatchInput("BLE search fail again", id="b"),
            MatchInput("quiet", id="c"),
        ]
        result = match_batch(db_session, PROJECT_ID, events)
        assert result["events_with_matches"] == 2
        assert result["total_matches"] == 2
        assert [r["event_id"] for r in result["results"]] == ["a", "b"]
        assert result["hit_issue_ids"] == [seed_issues[1].id]
        assert _hits(db_session, seed_issues) == [0, 1, 0]

    def test_batch_limit(self, db_session, seed_issues):
        match_batch(db_session, PROJECT_ID, [MatchInput("x")] * MAX_BATCH_EVENTS)
        with pytest.raises(BatchTooLarge):
            match_batch(db_session, PROJECT_ID, [MatchInput("x")] * (MAX_BATCH_EVENTS + 1))

    def test_match_log_file_scans_error_events(self, db_session, log_file, seed_issues):
        add_events(db_session, log_file, [
            ("BLE search fail", 0, 3, {}),
            ("connect", 10, 2, {"error_code": "AUTH_FAIL"}),
            ("BLE search fail", 20, 2, {}),
        ])
        result = match_log_file(db_session, PROJECT_ID, log_file.id)
        assert result["scanned_events"] == 2
        assert result["events_with_matches"] == 2


class TestCrud:
    def test_create_update_and_list(self, db_session, seed_issues):
        issue = create_issue(
            db_session, PROJECT_ID, {"title": "Low battery", "severity": 1, "category": "device", "description": None},
            created_by="alice",
        )
        assert issue.description == ""
        assert issue.created_by == "alice"

        update_issue(db_session, issue, {"severity": 5, "project_id": 99})
        assert issue.severity == 5
        assert issue.project_id == PROJECT_ID

        items, total = list_issues(db_session, PROJECT_ID, limit=2)
        assert total == 4
        assert [i.title for i in items] == ["Low battery", "Auth key rejected"]

        items, total = list_issues(db_session, PROJECT_ID, category="connection", search="gatt")
        assert total == 1
        assert items[0].title == "GATT 133"


class TestReports:
    def test_session_report(self, db_session, seed_session_events):
        refresh_sessions(db_session, PROJECT_ID, ["L1"])
        report = generate_report(db_session, PROJECT_ID, "session_analysis", link_code="L1", created_by="alice")
        assert report.content["event_count"] == 7
        assert report.content["session"]["status"] == "done"
        assert report.summary == "Session L1: 7 events, 0 errors, 1 commands. Duration: 10.0s. Status: done."
        assert report.source_data["link_code"] == "L1"

        markdown = report_to_markdown(report)
        assert markdown.startswith(f"# {report.title}\n")
        assert "**Created By:** alice" in markdown

    def test_error_report(self, db_session, log_file):
        add_events(db_session, log_file, [
            ("write failed", 0, 4, {"error_code": "E1", "device_mac": "M1", "link_code": "L1"}),
            ("write failed", 10, 4, {"error_code": "E1", "device_mac": "M1", "link_code": "L1"}),
            ("warn", 20, 3, {}),
            ("fine", 30, 2, {}),
        ])
        report = generate_report(
            db_session, PROJECT_ID, "error_distribution", start_ms=BASE_TS, end_ms=BASE_TS + 1_000,
        )
        assert report.content["total_errors"] == 3
        assert report.content["by_error_code"][0] == {"code": "E1", "count": 2}
        assert report.content["affected_devices_count"] == 1
        assert "Top error: E1 (2 occurrences)" in report.summary

    @pytest.mark.parametrize("kwargs,code", [
        ({"report_type": "session_analysis"}, "LINK_CODE_REQUIRED"),
        ({"report_type": "error_distribution", "start_ms": 1}, "TIME_RANGE_REQUIRED"),
        ({"report_type": "weekly"}, "UNSUPPORTED_REPORT_TYPE"),
    ])
    def test_missing_inputs(self, db_session, kwargs, code):
        with pytest.raises(ApiError) as exc_info:
            generate_report(db_session, PROJECT_ID, **kwargs)
        assert exc_info.value.code == code

    def test_list_reports_newest_first(self, db_session, seed_session_events):
        first = generate_report(db_session, PROJECT_ID, "session_analysis", link_code="L1")
        second = generate_report(db_session, PROJECT_ID, "session_analysis", link_code="L1")
        assert [r.id for r in list_reports(db_session, PROJECT_ID)][:2] == [second.id, first.id]
        assert list_reports(db_session, PROJECT_ID, report_type="error_distribution") == []
