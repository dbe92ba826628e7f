from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow.core.config import get_settings
from stageflow.core.database import Base, get_db
from stageflow.main import app


HEADERS = {"X-Organization-Id": "org-metrics", "X-Actor-Id": "metrics-user"}


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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


def test_metrics_endpoint_exposes_http_and_automation_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post("/api/automation/pipelines/templates/recruitment", headers=HEADERS)
    assert pipeline.status_code == 201
    stages = {stage["name"]: stage["id"] for stage in pipeline.json()["stages"]}

    record = client.post(
        "/api/automation/records",
        json={"pipeline_id": pipeline.json()["id"], "owner_id": "metrics-user"},
        headers=HEADERS,
    )
    assert record.status_code == 201

    transition = client.post(
        f"/api/automation/records/{record.json()['id']}/transition",
        json={
            "target_stage_id": stages["Interview Scheduled"],
            "field_values": {"interviewDate": "2026-03-10", "interviewMode": "onsite", "interviewRound": "2"},
        },
        headers=HEADERS,
    )
    assert transition.status_code == 200

    drained = client.post("/api/automation/executor/drain", headers=HEADERS)
    assert drained.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "stageflow_stage_transitions_total" in body
    assert "stageflow_automation_firings_total" in body
    assert "stageflow_action_requests_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/automation/records/{id}/transition"' in body
    assert 'path="/api/automation/pipelines/templates/{industry_id}"' in body
    assert 'outcome="applied"' in body
    assert 'trigger="on_enter"' in body
    assert 'action_type="create_task",status="succeeded"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
