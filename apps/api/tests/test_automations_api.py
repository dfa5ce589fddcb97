from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowlane import events
from flowlane.automations import dispatch
from flowlane.automations.models import Automation, Card, CardField, CardHistory, Pipe, Stage, StageForm
from flowlane.core.config import get_settings
from flowlane.core.database import Base, get_db, get_session_factory
from flowlane.main import app


def _memory_engine() -> Engine:
    return create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = _memory_engine()
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def broken_session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = _memory_engine()
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        engine.dispose()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("EMAIL_DISPATCH_URL", raising=False)
    monkeypatch.setenv("CASCADE_BACKEND", "thread")
    monkeypatch.setenv("AUTOMATION_MAX_CASCADE_DEPTH", "0")
    monkeypatch.setenv("APP_BASE_URL", "https://app.test")
    get_settings.cache_clear()
    events.published_events.clear()
    dispatch.sent_emails.clear()
    yield
    events.published_events.clear()
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
        pipe = Pipe(name="Onboarding")
        intake = Stage(pipe=pipe, name="Intake", position=0)
        review = Stage(pipe=pipe, name="Review", position=1)
        form = StageForm(stage=intake, name="Client Intake")
        card = Card(stage=intake, title="Globex")
        session.add_all([pipe, intake, review, form, card])
        session.flush()
        session.add(CardField(card_id=card.id, key="email", value="ops@globex.test", position=0))
        session.commit()
        return {
            "pipe_id": pipe.id,
            "intake_id": intake.id,
            "review_id": review.id,
            "form_id": form.id,
            "card_id": card.id,
        }


def _create_automation(session_factory: sessionmaker[Session], pipe_id: uuid.UUID, **values: Any) -> uuid.UUID:
    values.setdefault("trigger_config", {})
    values.setdefault("actions", [])
    with session_factory() as session:
        automation = Automation(pipe_id=pipe_id, **values)
        session.add(automation)
        session.commit()
        return automation.id


def _fields(client: TestClient, card_id: uuid.UUID) -> dict[str, Any]:
    response = client.get(f"/api/cards/{card_id}")
    assert response.status_code == 200
    return {field["key"]: field["value"] for field in response.json()["fields"]}


def _logs(client: TestClient, card_id: uuid.UUID) -> list[dict[str, Any]]:
    response = client.get(f"/api/cards/{card_id}/automation-logs")
    assert response.status_code == 200
    return response.json()


def test_field_update_runs_field_value_automations(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)
    automation_id = _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Flag approval",
        trigger_type="card_field_value",
        trigger_config={"fieldKey": "status", "operator": "equals", "value": "approved"},
        actions=[{"type": "update_field", "config": {"fieldKey": "approved_by", "value": "automation"}}],
    )

    response = client.put(f"/api/cards/{ids['card_id']}/fields/status", json={"value": "approved"})

    assert response.status_code == 200
    assert _fields(client, ids["card_id"])["approved_by"] == "automation"
    logs = _logs(client, ids["card_id"])
    assert len(logs) == 1
    assert logs[0]["automation_id"] == str(automation_id)
    assert logs[0]["status"] == "success"
    assert logs[0]["trigger_type"] == "card_field_value"
    assert logs[0]["conditions_met"] is None
    assert logs[0]["actions_executed"][0]["result"] == {"fieldKey": "approved_by", "newValue": "automation"}


def test_field_update_with_other_value_runs_nothing(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)
    _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Flag approval",
        trigger_type="card_field_value",
        trigger_config={"fieldKey": "status", "value": "approved"},
        actions=[{"type": "update_field", "config": {"fieldKey": "approved_by", "value": "automation"}}],
    )

    response = client.put(f"/api/cards/{ids['card_id']}/fields/status", json={"value": "pending"})

    assert response.status_code == 200
    assert "approved_by" not in _fields(client, ids["card_id"])
    assert _logs(client, ids["card_id"]) == []


def test_form_submission_runs_form_automations(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)
    _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Send intake link",
        trigger_type="form_submission",
        trigger_config={"formId": str(ids["form_id"])},
        actions=[{"type": "send_form_link", "config": {"formId": str(ids["form_id"]), "recipientField": "email"}}],
    )

    response = client.post(
        f"/api/cards/{ids['card_id']}/forms/{ids['form_id']}/submissions",
        json={"responses": {"company": "Globex"}, "submitter_email": "ops@globex.test"},
    )

    assert response.status_code == 201
    assert response.json()["responses"] == {"company": "Globex"}
    assert len(dispatch.sent_emails) == 1
    assert dispatch.sent_emails[0]["to"] == "ops@globex.test"
    assert dispatch.sent_emails[0]["body"].count(f"https://app.test/form/{ids['card_id']}/{ids['form_id']}") == 2
    submitted = [item for item in events.published_events if item.get("event_type") == "form.submitted"]
    assert submitted[-1]["payload"]["form_id"] == str(ids["form_id"])


def test_move_runs_stage_automations_and_records_skips(
    client: TestClient,
    session_factory: sessionmaker[Session],
) -> None:
    ids = _create_board(session_factory)
    _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Review kickoff",
        trigger_type="card_enters_stage",
        trigger_config={"stageId": str(ids["review_id"])},
        conditions={"logic": "AND", "rules": [{"fieldKey": "form:Client Intake.company", "operator": "is_filled"}]},
        actions=[{"type": "update_field", "config": {"fieldKey": "kickoff", "value": True}}],
    )

    response = client.post(f"/api/cards/{ids['card_id']}/move", json={"stage_id": str(ids["review_id"])})

    assert response.status_code == 200
    assert response.json()["stage_id"] == str(ids["review_id"])
    logs = _logs(client, ids["card_id"])
    assert len(logs) == 1
    assert logs[0]["status"] == "skipped"
    assert logs[0]["conditions_met"] is False
    assert logs[0]["actions_executed"] == []
    assert logs[0]["error_message"] == "Conditions not met"
    with session_factory() as session:
        history = session.scalars(select(CardHistory).where(CardHistory.card_id == ids["card_id"])).all()
    assert [(item.from_stage_name, item.to_stage_name) for item in history] == [("Intake", "Review")]


def test_move_to_current_stage_is_a_no_op(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)

    response = client.post(f"/api/cards/{ids['card_id']}/move", json={"stage_id": str(ids["intake_id"])})

    assert response.status_code == 200
    assert events.published_events == []


def test_automation_move_respects_cascade_depth_limit(
    client: TestClient,
    session_factory: sessionmaker[Session],
) -> None:
    ids = _create_board(session_factory)
    _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Bounce back",
        trigger_type="card_enters_stage",
        trigger_config={"stageId": str(ids["review_id"])},
        actions=[{"type": "move_card", "config": {"targetStageId": str(ids["intake_id"])}}],
    )

    response = client.post(f"/api/cards/{ids['card_id']}/move", json={"stage_id": str(ids["review_id"])})

    assert response.status_code == 200
    assert client.get(f"/api/cards/{ids['card_id']}").json()["stage_id"] == str(ids["intake_id"])
    logs = _logs(client, ids["card_id"])
    assert logs[0]["actions_executed"][0]["result"]["cascadeScheduled"] is False


def test_manual_run_returns_report(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)
    _create_automation(
        session_factory,
        ids["pipe_id"],
        name="Manual tag",
        trigger_type="manual",
        actions=[{"type": "update_field", "config": {"fieldKey": "tagged", "value": "yes"}}],
    )
    _create_automation(session_factory, ids["pipe_id"], name="Switched off", trigger_type="manual", enabled=False)

    response = client.post(
        "/api/automations/run",
        json={
            "trigger_type": "manual",
            "card_id": str(ids["card_id"]),
            "pipe_id": str(ids["pipe_id"]),
            "context": {},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["automations_found"] == 1
    assert body["automations_matched"] == 1
    assert body["automations_executed"] == ["Manual tag"]
    assert body["automations_failed"] == []
    assert body["details"][0]["execution"]["status"] == "success"
    assert body["details"][0]["execution"]["actions_executed"][0]["status"] == "success"
    assert _fields(client, ids["card_id"])["tagged"] == "yes"


def test_manual_run_rejects_unknown_trigger_type(client: TestClient, session_factory: sessionmaker[Session]) -> None:
    ids = _create_board(session_factory)

    response = client.post(
        "/api/automations/run",
        json={"trigger_type": "nightly", "card_id": str(ids["card_id"]), "pipe_id": str(ids["pipe_id"])},
    )

    assert response.status_code == 422


def test_run_endpoint_maps_storage_failure_to_503(
    client: TestClient,
    broken_session_factory: sessionmaker[Session],
) -> None:
    app.dependency_overrides[get_session_factory] = lambda: broken_session_factory

    response = client.post(
        "/api/automations/run",
        json={"trigger_type": "manual", "card_id": str(uuid.uuid4()), "pipe_id": str(uuid.uuid4())},
        headers={"X-Correlation-Id": "corr-storage-1"},
    )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "automation_storage_unavailable"
    assert body["correlation_id"] == "corr-storage-1"


def test_board_write_survives_automation_storage_failure(
    client: TestClient,
    session_factory: sessionmaker[Session],
    broken_session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)
    ids = _create_board(session_factory)
    app.dependency_overrides[get_session_factory] = lambda: broken_session_factory

    response = client.put(f"/api/cards/{ids['card_id']}/fields/status", json={"value": "approved"})

    assert response.status_code == 200
    failures = [record for record in caplog.records if record.getMessage() == "automation_auto_run_failed"]
    assert failures
    assert getattr(failures[0], "event_name") == "card.field_changed"
    assert getattr(failures[0], "card_id") == str(ids["card_id"])


def test_unknown_card_returns_error_envelope(client: TestClient) -> None:
    response = client.post(f"/api/cards/{uuid.uuid4()}/move", json={"stage_id": str(uuid.uuid4())})

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "card_move_failed"
    assert body["message"] == "card not found"
    assert body["correlation_id"] == response.headers.get("x-correlation-id")


def test_logs_for_card_without_runs_is_empty(client: TestClient) -> None:
    assert _logs(client, uuid.uuid4()) == []
