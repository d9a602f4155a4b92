"""Tests for bearer auth: unit tests for token utils, integration tests for endpoints."""

from datetime import timedelta

import pytest
from jose import JWTError, jwt

from logtrace.core.config import settings
from logtrace.core.security import create_access_token, decode_access_token
from logtrace.scripts.issue_token import issue_token

from conftest import PROJECT_ID


# ── Unit tests ──────────────────────────────────────────────────────────────


class TestJWT:
    def test_round_trip(self):
        token = create_access_token("alice", "admin")
        payload = decode_access_token(token)
        assert payload["sub"] == "alice"
        assert payload["role"] == "admin"

    def test_default_role(self):
        assert decode_access_token(create_access_token("bob"))["role"] == "engineer"

    def test_expired_token(self):
        token = create_access_token("alice", "viewer", expires_delta=timedelta(seconds=-1))
        with pytest.raises(JWTError):
            decode_access_token(token)

    def test_wrong_secret(self):
        token = jwt.encode({"sub": "mallory"}, "not-the-secret", algorithm=settings.JWT_ALGORITHM)
        with pytest.raises(JWTError):
            decode_access_token(token)


class TestIssueTokenScript:
    def test_issues_token(self):
        payload = decode_access_token(issue_token(["carol", "oncall", "5"]))
        assert payload["sub"] == "carol"
        assert payload["role"] == "oncall"

    def test_usage_without_subject(self, capsys):
        with pytest.raises(SystemExit) as exc:
            issue_token([])
        assert exc.value.code == 1
        assert "usage" in capsys.readouterr().out


# ── Integration tests ──────────────────────────────────────────────────────


class TestBearerAuth:
    def test_no_token(self, client):
        r = client.get("/logs/files")
        assert r.status_code == 401
        assert r.json()["detail"] == "Not authenticated"

    def test_garbage_token(self, client):
        r = client.get("/logs/files", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_expired_token(self, client):
        token = create_access_token("alice", expires_delta=timedelta(seconds=-1))
        r = client.get("/logs/files", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 401
        assert r.json()["detail"] == "Invalid or expired token"

    def test_token_without_subject(self, client):
        token = jwt.encode({"role": "engineer"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        r = client.get("/logs/files", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 401
        assert r.json()["detail"] == "Invalid token payload"

    def test_valid_token(self, client, auth_headers):
        assert client.get("/logs/files", headers=auth_headers).status_code == 200

    @pytest.mark.parametrize("path", [
        "/events/search",
        "/sessions",
        "/known-issues",
        "/stats/summary",
    ])
    def test_project_routes_require_token(self, client, path):
        assert client.get(path, params={"project_id": PROJECT_ID}).status_code == 401

    def test_health_is_public(self, client):
        assert client.get("/health").status_code == 200
