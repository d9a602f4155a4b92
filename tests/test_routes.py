"""Endpoint integration tests using TestClient + SQLite."""
import io
from pathlib import Path
from unittest.mock import patch

import pytest

from logtrace.core.config import settings
from logtrace.models import LogFile, LogFileStatus

from conftest import PROJECT_ID, add_events

DAY = {"start": "2025-10-09T00:00:00", "end": "2025-10-10T00:00:00"}
SCOPE = {"project_id": PROJECT_ID}


@pytest.fixture()
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    return tmp_path / "uploads"


class TestHealthAndRoot:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "LogTrace" in r.json()["message"]


class TestUpload:
    @patch("logtrace.routes.logs.enqueue_ingestion")
    def test_valid_upload(self, mock_enqueue, client, db_session, auth_headers, upload_dir):
        r = client.post(
            "/logs/upload",
            data={"project_id": str(PROJECT_ID)},
            files={"file": ("device.log", io.BytesIO(b'{"c": "x"}\n'), "text/plain")},
            headers=auth_headers,
        )
        assert r.status_code == 202
        body = r.json()
        assert body["status"] == "queued"
        mock_enqueue.assert_called_once_with(body["log_file_id"])

        lf = db_session.get(LogFile, body["log_file_id"])
        assert lf.uploaded_by == "alice"
        assert lf.size_bytes == 11
        assert Path(lf.stored_path).parent == upload_dir.resolve()

    def test_invalid_extension(self, client, auth_headers, upload_dir):
        r = client.post(
            "/logs/upload",
            data={"project_id": str(PROJECT_ID)},
            files={"file": ("test.exe", io.BytesIO(b"data"), "application/octet-stream")},
            headers=auth_headers,
        )
        assert r.status_code == 400
        assert "Invalid file type" in r.json()["detail"]

    def test_project_required(self, client, auth_headers, upload_dir):
        r = client.post(
            "/logs/upload",
            files={"file": ("a.log", io.BytesIO(b"data"), "text/plain")},
            headers=auth_headers,
        )
        assert r.status_code == 422

    def test_requires_token(self, client, upload_dir):
        r = client.post(
            "/logs/upload",
            data={"project_id": str(PROJECT_ID)},
            files={"file": ("a.log", io.BytesIO(b"data"), "text/plain")},
        )
        assert r.status_code == 401


class TestLogFiles:
    def test_list_and_filter(self, client, log_file, auth_headers):
        r = client.get("/logs/files", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["total"] == 1
        assert r.json()["items"][0]["filename"] == "device.log"

        r = client.get("/logs/files", params={"status": "failed"}, headers=auth_headers)
        assert r.json()["total"] == 0

    def test_get_missing(self, client, auth_headers):
        assert client.get("/logs/files/999", params=SCOPE, headers=auth_headers).status_code == 404

    def test_delete_removes_stored_file(self, client, db_session, auth_headers, tmp_path):
        stored = tmp_path / "x.log"
        stored.write_text("data")
        lf = LogFile(project_id=PROJECT_ID, filename="x.log", stored_path=str(stored), size_bytes=4)
        db_session.add(lf)
        db_session.commit()

        r = client.delete(f"/logs/files/{lf.id}", params=SCOPE, headers=auth_headers)
        assert r.status_code == 204
        assert not stored.exists()
        assert client.get(f"/logs/files/{lf.id}", params=SCOPE, headers=auth_headers).status_code == 404

    def test_other_project_cannot_see_file(self, client, log_file, auth_headers):
        other = {"project_id": PROJECT_ID + 1}
        assert client.get(f"/logs/files/{log_file.id}", params=other, headers=auth_headers).status_code == 404
        assert client.delete(f"/logs/files/{log_file.id}", params=other, headers=auth_headers).status_code == 404
        r = client.post(f"/logs/files/{log_file.id}/reprocess", params=other, headers=auth_headers)
        assert r.status_code == 404
        assert client.get(f"/logs/files/{log_file.id}", params=SCOPE, headers=auth_headers).status_code == 200

    @patch("logtrace.routes.logs.enqueue_ingestion")
    def test_reprocess(self, mock_enqueue, client, db_session, log_file, auth_headers):
        r = client.post(f"/logs/files/{log_file.id}/reprocess", params=SCOPE, headers=auth_headers)
        assert r.status_code == 202
        assert r.json()["status"] == "queued"
        mock_enqueue.assert_called_once_with(log_file.id)

    @patch("logtrace.routes.logs.enqueue_ingestion")
    def test_reprocess_conflict(self, mock_enqueue, client, db_session, log_file, auth_headers):
        log_file.status = LogFileStatus.processing
        db_session.commit()
        r = client.post(f"/logs/files/{log_file.id}/reprocess", params=SCOPE, headers=auth_headers)
        assert r.status_code == 409
        mock_enqueue.assert_not_called()

    def test_stream_quality(self, client, db_session, log_file, auth_headers):
        add_events(db_session, log_file, [
            ("stream closed", 0, 2, {"error_code": "DATA_STREAM_SESSION_SUMMARY", "msg": {"reason": "ok"}}),
        ])
        r = client.get(f"/logs/files/{log_file.id}/stream-quality", params=SCOPE, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["summary"]["total"] == 1

    def test_file_reports(self, client, db_session, log_file, seed_session_events, auth_headers):
        add_events(db_session, log_file, [
            ("stream", 11_000, 3, {"error_code": "DATA_STREAM_ORDER_BROKEN", "link_code": "L1"}),
            ("network_request_failed", 12_000, 4, {"request_id": "H1", "msg": {"statusCode": 503}}),
        ])
        base = f"/logs/files/{log_file.id}"
        r = client.get(f"{base}/data-continuity", params=SCOPE, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["by_link_code"][0]["link_code"] == "L1"

        r = client.get(f"{base}/backend-quality", params={**SCOPE, "list_limit": 5}, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["http"]["failed_requests"][0]["status_code"] == 503

        r = client.get(f"{base}/diagnose", params=SCOPE, headers=auth_headers)
        assert r.status_code == 200
        body = r.json()
        assert body["log_file"]["id"] == log_file.id
        assert [f["code"] for f in body["findings"]] == ["DATA_CONTINUITY", "HTTP_FAILED"]

    def test_file_reports_check_project(self, client, log_file, auth_headers):
        other = {"project_id": PROJECT_ID + 1}
        for report in ("data-continuity", "backend-quality", "diagnose"):
            r = client.get(f"/logs/files/{log_file.id}/{report}", params=other, headers=auth_headers)
            assert r.status_code == 404


class TestTrace:
    def test_link_code_and_request(self, client, seed_session_events, auth_headers):
        r = client.get("/logs/trace/link-code/L1", params=SCOPE, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["count"] == 7

        r = client.get("/logs/trace/request-id/R1", params=SCOPE, headers=auth_headers)
        assert [i["event_name"] for i in r.json()["items"]] == ["MQTT publish", "MQTT ack"]

        r = client.get("/logs/trace/link-code/L1/devices", params=SCOPE, headers=auth_headers)
        assert r.json()["devices"][0]["event_count"] == 7

    def test_device_routes_need_window(self, client, seed_session_events, auth_headers):
        mac = "AA:BB:CC:DD:EE:FF"
        assert client.get(f"/logs/trace/device/{mac}", params=SCOPE, headers=auth_headers).status_code == 422

        r = client.get(f"/logs/trace/device/{mac}", params={**SCOPE, **DAY}, headers=auth_headers)
        assert r.json()["count"] == 7
        r = client.get(f"/logs/trace/device/{mac}/sessions", params={**SCOPE, **DAY}, headers=auth_headers)
        assert [s["link_code"] for s in r.json()["sessions"]] == ["L1"]
        r = client.get("/logs/trace/device-sn/SN001", params={**SCOPE, **DAY, "limit": 3}, headers=auth_headers)
        assert r.json()["count"] == 3

    def test_foreign_log_file(self, client, db_session, auth_headers):
        lf = LogFile(project_id=PROJECT_ID + 1, filename="x.log", stored_path="/tmp/x.log", size_bytes=1)
        db_session.add(lf)
        db_session.commit()
        r = client.get("/logs/trace/attempt/A1", params={**SCOPE, "log_file_id": lf.id}, headers=auth_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "LOG_FILE_NOT_FOUND"


class TestEvents:
    def test_search_pages(self, client, seed_session_events, auth_headers):
        params = {"project_id": PROJECT_ID, "limit": 5, **DAY}
        r = client.get("/events/search", params=params, headers=auth_headers)
        assert r.status_code == 200
        body = r.json()
        assert len(body["items"]) == 5
        assert body["items"][0]["event_name"] == "BLE disconnect"

        r = client.get("/events/search", params={**params, "cursor": body["next_cursor"]}, headers=auth_headers)
        assert [e["event_name"] for e in r.json()["items"]] == ["BLE search success", "BLE start searching"]
        assert r.json()["next_cursor"] is None

    def test_search_errors(self, client, auth_headers):
        r = client.get("/events/search", params={"project_id": PROJECT_ID, "cursor": "!!"}, headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_CURSOR"

        r = client.get(
            "/events/search",
            params={"project_id": PROJECT_ID, "start": DAY["end"], "end": DAY["start"]},
            headers=auth_headers,
        )
        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_TIME_RANGE"

    def test_tracking_and_context(self, client, seed_session_events, auth_headers):
        r = client.get("/events/tracking/request_id", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.json() == {"field": "request_id", "items": [{"value": "R1", "count": 2}]}

        target = seed_session_events[3]
        r = client.get(f"/events/{target.id}", params={"project_id": PROJECT_ID, "before": 1, "after": 1},
                       headers=auth_headers)
        assert r.status_code == 200
        assert [e["event_name"] for e in r.json()["before"]] == ["BLE start connection"]

        r = client.get("/events/9999", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "EVENT_NOT_FOUND"

    def test_error_endpoints(self, client, seed_session_events, auth_headers):
        r = client.get("/events/errors/distribution", params={"project_id": PROJECT_ID, **DAY}, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["total"] == 0

        r = client.get(f"/events/{seed_session_events[0].id}/error-context", params={"project_id": PROJECT_ID},
                       headers=auth_headers)
        assert r.json()["analysis"]["related_count"] == 7
        r = client.get("/events/9999/error-context", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.status_code == 404


class TestSessions:
    def test_aggregate_then_list(self, client, seed_session_events, auth_headers):
        r = client.post("/sessions/aggregate", json={
            "project_id": PROJECT_ID, "start_time": DAY["start"], "end_time": DAY["end"],
        }, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["count"] == 1
        assert r.json()["items"][0]["outcome"] == "ack_ok"

        r = client.get("/sessions", params={"project_id": PROJECT_ID, "status": "done"}, headers=auth_headers)
        assert [s["link_code"] for s in r.json()["items"]] == ["L1"]
        assert r.json()["has_more"] is False

    def test_detail_file_and_compare(self, client, log_file, seed_session_events, auth_headers):
        r = client.get("/sessions/L1", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.json()["session"]["status"] == "done"
        assert client.get("/sessions/L9", params={"project_id": PROJECT_ID}, headers=auth_headers).status_code == 404

        r = client.get(f"/sessions/files/{log_file.id}", params={"project_id": PROJECT_ID}, headers=auth_headers)
        assert r.json()["items"][0]["link_code"] == "L1"

        r = client.get("/sessions/compare", params={
            "project_id": PROJECT_ID, "link_code_a": "L1", "link_code_b": "L9",
        }, headers=auth_headers)
        assert r.status_code == 404

    def test_bad_status(self, client, auth_headers):
        r = client.get("/sessions", params={"project_id": PROJECT_ID, "status": "sleeping"}, headers=auth_headers)
        assert r.status_code == 422


class TestCommandsAndAnomalies:
    def test_chains(self, client, seed_session_events, auth_headers):
        r = client.get("/commands/chains", params={"project_id": PROJECT_ID, **DAY}, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["stats"]["total"] == 1

    def test_reconnects(self, client, seed_session_events, auth_headers):
        r = client.get("/commands/reconnects", params={"project_id": PROJECT_ID, **DAY}, headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["summary"]["reconnect_window_ms"] == 300_000

    def test_anomalies_enhanced(self, client, seed_session_events, auth_headers):
        r = client.get("/anomalies", params={"project_id": PROJECT_ID, "enhanced": True, **DAY}, headers=auth_headers)
        assert r.status_code == 200
        assert "recommendations" in r.json()

    def test_window_required(self, client, auth_headers):
        assert client.get("/anomalies", params={"project_id": PROJECT_ID}, headers=auth_headers).status_code == 422


class TestKnownIssues:
    def test_crud(self, client, auth_headers):
        params = {"project_id": PROJECT_ID}
        r = client.post("/known-issues", params=params, json={
            "title": "Auth key rejected", "category": "device", "error_code": "AUTH_FAIL", "severity": 4,
        }, headers=auth_headers)
        assert r.status_code == 201
        issue = r.json()
        assert issue["created_by"] == "alice"
        assert issue["hit_count"] == 0

        r = client.patch(f"/known-issues/{issue['id']}", params=params,
                         json={"error_code": None, "event_pattern": "auth fail", "title": None},
                         headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["error_code"] is None
        assert r.json()["title"] == "Auth key rejected"

        r = client.get("/known-issues", params=params, headers=auth_headers)
        assert r.json()["total"] == 1

        assert client.delete(f"/known-issues/{issue['id']}", params=params, headers=auth_headers).status_code == 204
        assert client.get(f"/known-issues/{issue['id']}", params=params, headers=auth_headers).status_code == 404

    def test_match_endpoints(self, client, seed_issues, auth_headers):
        params = {"project_id": PROJECT_ID}
        r = client.post("/known-issues/match", params=params,
                        json={"event_name": "connect", "msg": {"gattStatus": 133}}, headers=auth_headers)
        assert [m["match_type"] for m in r.json()["matches"]] == ["msgPattern"]

        r = client.post("/known-issues/match-batch", params=params,
                        json={"events": [{"event_name": "x"}] * 101}, headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["code"] == "BATCH_TOO_LARGE"

    def test_match_file_checks_project(self, client, log_file, auth_headers):
        r = client.post(f"/known-issues/match-file/{log_file.id}", params={"project_id": PROJECT_ID + 1},
                        headers=auth_headers)
        assert r.status_code == 404

    def test_reports(self, client, seed_session_events, auth_headers):
        params = {"project_id": PROJECT_ID}
        r = client.post("/known-issues/reports", params=params,
                        json={"report_type": "session_analysis", "link_code": "L1", "title": "L1 review"},
                        headers=auth_headers)
        assert r.status_code == 201
        report = r.json()
        assert report["created_by"] == "alice"

        r = client.get(f"/known-issues/reports/{report['id']}/markdown", params=params, headers=auth_headers)
        assert r.text.startswith("# L1 review")
        assert r.headers["content-type"].startswith("text/markdown")

        r = client.post("/known-issues/reports", params=params, json={"report_type": "error_distribution"},
                        headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["code"] == "TIME_RANGE_REQUIRED"

        r = client.get("/known-issues/reports", params=params, headers=auth_headers)
        assert [x["id"] for x in r.json()] == [report["id"]]


class TestAnalysis:
    def test_artifact_is_computed_once(self, client, log_file, seed_session_events, auth_headers):
        r = client.get(f"/analysis/files/{log_file.id}/main-flow", headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["recomputed"] is True
        assert r.json()["data"]["total_sessions"] == 1

        r = client.get(f"/analysis/files/{log_file.id}/coverage", headers=auth_headers)
        assert r.json()["recomputed"] is False

    def test_unknown_artifact_and_file(self, client, log_file, auth_headers):
        assert client.get(f"/analysis/files/{log_file.id}/everything", headers=auth_headers).status_code == 422
        r = client.get("/analysis/files/999/coverage", headers=auth_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "LOG_FILE_NOT_FOUND"

    def test_refresh_file(self, client, log_file, auth_headers):
        r = client.post(f"/analysis/files/{log_file.id}/refresh", headers=auth_headers)
        assert r.json()["status"] == "completed"

    @patch("logtrace.routes.analysis.run_project_refresh")
    def test_project_refresh_is_scheduled(self, mock_refresh, client, auth_headers):
        r = client.post(f"/analysis/projects/{PROJECT_ID}/refresh", params={"limit": 10}, headers=auth_headers)
        assert r.status_code == 202
        assert r.json()["status"] == "scheduled"
        mock_refresh.assert_called_once_with(PROJECT_ID, 10)


class TestStats:
    def test_summary(self, client, db_session, log_file, auth_headers):
        add_events(db_session, log_file, [
            ("write failed", 0, 4, {"error_code": "E1"}),
            ("write failed", 1, 4, {"error_code": "E1"}),
            ("ok", 2, 2, {}),
            ("PARSER_ERROR", 3, 4, {}),
        ])
        r = client.get("/stats/summary", params={"project_id": PROJECT_ID}, headers=auth_headers)
        body = r.json()
        assert body["total_events"] == 3
        assert body["total_files"] == 1
        assert body["level_breakdown"] == [{"level": 2, "count": 1}, {"level": 4, "count": 2}]
        assert body["top_events"][0] == {"name": "write failed", "count": 2}
        assert body["top_error_codes"] == [{"name": "E1", "count": 2}]
        assert body["files_by_status"] == [{"status": "parsed", "count": 1}]
