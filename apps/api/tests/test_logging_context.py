from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow.context import reset_correlation_id, set_correlation_id
from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.logging import JsonLogFormatter, TextLogFormatter
from stageflow.main import app


HEADERS = {"X-Organization-Id": "org-logs"}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    record_id = uuid.uuid4()
    response = client.get(f"/api/automation/records/{record_id}", headers={**HEADERS, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "stageflow.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/automation/records/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "organization_id", None) == "org-logs"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_transition_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    pipeline = client.post("/api/automation/pipelines/templates/sme", headers=HEADERS).json()
    record = client.post(
        "/api/automation/records",
        json={"pipeline_id": pipeline["id"], "owner_id": "founder-1"},
        headers=HEADERS,
    ).json()
    response = client.post(
        f"/api/automation/records/{record['id']}/transition",
        json={"target_stage_id": pipeline["stages"][2]["id"]},
        headers={**HEADERS, "X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 422

    rejected = [
        item
        for item in caplog.records
        if item.name == "stageflow.automation.transitions" and item.getMessage() == "transition.rejected"
    ]
    assert rejected
    assert any(
        getattr(item, "correlation_id", None) == "abc-456"
        and getattr(item, "record_id", None) == record["id"]
        and getattr(item, "status", None) == "required_field_missing"
        and getattr(item, "organization_id", None) == "org-logs"
        for item in rejected
    )


def test_json_formatter_emits_known_fields() -> None:
    logger = logging.getLogger("stageflow.test")
    token = set_correlation_id("fmt-1")
    try:
        record = logger.makeRecord(
            logger.name,
            logging.INFO,
            __file__,
            1,
            "action.succeeded",
            (),
            None,
            extra={"request_id": "req-1", "attempts": 2, "ignored_field": "x", "error": "e" * 900},
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "action.succeeded"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["request_id"] == "req-1"
    assert payload["fields"]["attempts"] == 2
    assert "ignored_field" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_text_formatter_appends_fields_after_message() -> None:
    record = logging.makeLogRecord(
        {
            "name": "stageflow.automation.scheduler",
            "levelname": "INFO",
            "msg": "scan.finished",
            "correlation_id": None,
            "partition": "0/2",
            "emitted": 3,
            "record_id": uuid.UUID("00000000-0000-0000-0000-000000000001"),
        }
    )

    line = TextLogFormatter().format(record)

    assert line.startswith("INFO    stageflow.automation.scheduler scan.finished")
    assert "correlation_id=" not in line
    assert line.endswith("record_id=00000000-0000-0000-0000-000000000001 emitted=3 partition=0/2")
