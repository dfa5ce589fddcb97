from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowlane.automations import dispatch
from flowlane.automations.models import Automation, Card, Pipe, Stage
from flowlane.core.config import get_settings
from flowlane.core.database import Base, get_db, get_session_factory
from flowlane.main import app


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("AUTOMATION_MAX_CASCADE_DEPTH", "0")
    monkeypatch.delenv("EMAIL_DISPATCH_URL", raising=False)
    get_settings.cache_clear()
    dispatch.sent_emails.clear()
    yield
    dispatch.sent_emails.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_board(session_factory: sessionmaker[Session]) -> dict[str, uuid.UUID]:
    with session_factory() as session:
        pipe = Pipe(name="Metrics Pipe")
        todo = Stage(pipe=pipe, name="Todo", position=0)
        done = Stage(pipe=pipe, name="Done", position=1)
        card = Card(stage=todo, title="Metrics Card")
        session.add_all([pipe, todo, done, card])
        session.flush()
        session.add_all(
            [
                Automation(
                    pipe_id=pipe.id,
                    name="Finish",
                    trigger_type="manual",
                    trigger_config={},
                    actions=[{"type": "move_card", "config": {"targetStageId": str(done.id)}}],
                ),
                Automation(
                    pipe_id=pipe.id,
                    name="Broken",
                    trigger_type="manual",
                    trigger_config={},
                    actions=[{"type": "send_sms", "config": {}}],
                ),
            ]
        )
        session.commit()
        return {"pipe_id": pipe.id, "card_id": card.id}


def test_metrics_endpoint_exposes_http_and_automation_metrics(
    client: TestClient,
    session_factory: sessionmaker[Session],
) -> None:
    ids = _create_board(session_factory)

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "service": "FlowLane API", "environment": get_settings().app_env}

    run = client.post(
        "/api/automations/run",
        json={"trigger_type": "manual", "card_id": str(ids["card_id"]), "pipe_id": str(ids["pipe_id"])},
    )
    assert run.status_code == 200
    assert run.json()["automations_failed"] == ["Broken"]

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_runs_total" in body
    assert "automation_run_duration_seconds" in body
    assert "automation_executions_total" in body
    assert "automation_actions_total" in body
    assert "automation_cascade_blocks_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/automations/run"' in body
    assert 'trigger_type="manual"' in body
    assert 'action_type="send_sms"' in body
    assert 'reason="MAX_DEPTH"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
