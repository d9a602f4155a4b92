import json
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from logtrace.db.base import Base
from logtrace.db.session import get_db
from logtrace.models import KnownIssue, LogEvent, LogFile, LogFileStatus
from logtrace.core.security import create_access_token


# In-memory SQLite for tests
TEST_DATABASE_URL = "sqlite://"

PROJECT_ID = 1
BASE_TS = 1_760_000_000_000


@pytest.fixture()
def db_session():
    """Per-test SQLite in-memory session."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support in SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(db_session):
    """Factory returning fresh sessions bound to the test engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())


@pytest.fixture()
def client(db_session):
    """TestClient with DB override."""
    from logtrace.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    """Authorization headers with a signed engineer token."""
    token = create_access_token("alice", "engineer")
    return {"Authorization": f"Bearer {token}"}


def make_line(event_name, ts, level=2, **msg):
    """One raw SDK log line: an outer envelope around a JSON-encoded inner payload."""
    inner = {"event": event_name, "msg": msg, "sdkInfo": "2.4.1", "appInfo": "com.example.cgm"}
    return json.dumps({"c": json.dumps(inner), "f": level, "l": ts, "n": "main", "i": 1, "m": True})


def add_events(db, log_file, rows):
    """Persist LogEvent rows from ``(event_name, offset_ms, level, fields)`` tuples."""
    events = []
    for i, (name, offset, level, fields) in enumerate(rows, start=1):
        fields = dict(fields or {})
        msg = fields.pop("msg", None)
        events.append(LogEvent(
            log_file_id=log_file.id,
            project_id=log_file.project_id,
            line_number=i,
            timestamp_ms=BASE_TS + offset,
            level=level,
            event_name=name,
            msg_json=msg,
            msg_text=json.dumps(msg) if msg is not None else None,
            raw_line=f"{name} line {i}",
            **fields,
        ))
    db.add_all(events)
    db.commit()
    return events


@pytest.fixture()
def log_file(db_session):
    lf = LogFile(
        project_id=PROJECT_ID,
        filename="device.log",
        stored_path="/tmp/device.log",
        size_bytes=1024,
        status=LogFileStatus.parsed,
        uploaded_by="alice",
        uploaded_at=datetime(2025, 10, 9, 8, 0, 0),
    )
    db_session.add(lf)
    db_session.commit()
    db_session.refresh(lf)
    return lf


@pytest.fixture()
def seed_session_events(db_session, log_file):
    """One BLE session (link L1) that scans, connects, publishes and is acked."""
    link = {"link_code": "L1", "device_mac": "AA:BB:CC:DD:EE:FF", "device_sn": "SN001"}
    rows = [
        ("BLE start searching", 0, 2, {**link, "stage": "ble", "op": "scan", "result": "start"}),
        ("BLE search success", 1_000, 2, {**link, "stage": "ble", "op": "scan", "result": "ok"}),
        ("BLE start connection", 1_500, 2, {**link, "stage": "ble", "op": "connect", "result": "start"}),
        ("BLE connection success", 3_000, 2, {**link, "stage": "ble", "op": "connect", "result": "ok"}),
        ("MQTT publish", 4_000, 2, {**link, "request_id": "R1", "stage": "mqtt", "op": "publish", "result": "start"}),
        ("MQTT ack", 4_500, 2, {**link, "request_id": "R1", "stage": "mqtt", "op": "ack", "result": "ok"}),
        ("BLE disconnect", 10_000, 2, {**link}),
    ]
    return add_events(db_session, log_file, rows)


@pytest.fixture()
def seed_issues(db_session):
    issues = [
        KnownIssue(
            project_id=PROJECT_ID, title="Auth key rejected", category="device", severity=4,
            error_code="AUTH_FAIL",
        ),
        KnownIssue(
            project_id=PROJECT_ID, title="Scan never finishes", category="connection", severity=3,
            event_pattern=r"BLE search fail",
        ),
        KnownIssue(
            project_id=PROJECT_ID, title="GATT 133", category="connection", severity=2,
            msg_pattern=r"status\W*133",
        ),
    ]
    db_session.add_all(issues)
    db_session.commit()
    for issue in issues:
        db_session.refresh(issue)
    return issues


EVENT_DEFAULTS = {
    "id": None, "log_file_id": 1, "project_id": PROJECT_ID, "level": 2,
    "stage": None, "op": None, "result": None,
    "device_sn": None, "device_mac": None, "link_code": None, "request_id": None,
    "attempt_id": None, "error_code": None, "reason_code": None,
    "msg_json": None, "sdk_version": None, "app_id": None, "terminal_info": None, "thread_name": None,
}


def fake_event(event_name, timestamp_ms, **fields):
    """Detached stand-in for a LogEvent row, for the pure analysis functions."""
    return SimpleNamespace(**{**EVENT_DEFAULTS, "event_name": event_name, "timestamp_ms": timestamp_ms, **fields})
