from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from flowlane.automations.errors import NotFoundError, StorageFailureError
from flowlane.automations.models import (
    Automation,
    AutomationLog,
    Card,
    CardField,
    CardHistory,
    EmailTemplate,
    FormSubmission,
    Pipe,
    Stage,
    utcnow,
)
from flowlane.automations.schemas import AutomationLogRead


tracer = trace.get_tracer("flowlane.automations.store")


@dataclass(frozen=True)
class FormSnapshot:
    id: uuid.UUID
    name: str


@dataclass(frozen=True)
class StageSnapshot:
    id: uuid.UUID
    name: str
    pipe_id: uuid.UUID
    pipe_name: str
    forms: tuple[FormSnapshot, ...] = ()

    def find_form(self, form_id: Any) -> FormSnapshot | None:
        wanted = str(form_id)
        return next((form for form in self.forms if str(form.id) == wanted), None)


@dataclass(frozen=True)
class SubmissionSnapshot:
    form_id: uuid.UUID
    form_name: str
    responses: dict[str, Any]
    submitted_at: datetime


@dataclass(frozen=True)
class CardSnapshot:
    id: uuid.UUID
    title: str
    description: str | None
    fields: dict[str, Any]
    stage: StageSnapshot | None
    submissions: tuple[SubmissionSnapshot, ...] = ()


@dataclass(frozen=True)
class EmailTemplateSnapshot:
    id: uuid.UUID
    name: str
    subject: str
    body: str
    from_email: str | None = None
    from_name: str | None = None
    to_email: str | None = None
    cc: str | None = None
    bcc: str | None = None


@dataclass(frozen=True)
class AutomationRecord:
    id: uuid.UUID
    pipe_id: uuid.UUID
    name: str
    trigger_type: str
    trigger_config: dict[str, Any]
    conditions: dict[str, Any] | None
    actions: list[dict[str, Any]]
    position: int | None
    created_at: datetime


@dataclass(frozen=True)
class CardMove:
    card_id: uuid.UUID
    from_stage_id: uuid.UUID | None
    from_stage_name: str | None
    to_stage_id: uuid.UUID
    to_stage_name: str
    pipe_id: uuid.UUID


@dataclass
class AutomationLogEntry:
    card_id: uuid.UUID
    automation_id: uuid.UUID
    status: str
    trigger_type: str
    conditions_met: bool | None
    actions_executed: list[dict[str, Any]] = field(default_factory=list)
    error_message: str | None = None


class AutomationStore(Protocol):
    def load_pipe_automations(self, pipe_id: Any, trigger_type: str) -> list[AutomationRecord] | None: ...

    def load_card(self, card_id: Any) -> CardSnapshot | None: ...

    def get_stage(self, stage_id: Any) -> StageSnapshot | None: ...

    def get_email_template(self, template_id: Any) -> EmailTemplateSnapshot | None: ...

    def move_card(self, card_id: Any, target_stage: StageSnapshot) -> CardMove: ...

    def upsert_card_field(self, card_id: Any, key: str, value: Any) -> None: ...

    def append_automation_log(self, entry: AutomationLogEntry) -> uuid.UUID: ...

    def list_automation_logs(self, card_id: Any) -> list[AutomationLogRead]: ...


def as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class SqlAutomationStore:
    """AutomationStore backed by SQLAlchemy.

    Every read opens and closes its own short-lived session, and every write runs in a
    single ``session.begin()`` block, so instances are safe to share across cascade
    worker threads. Driver and ORM errors surface as ``StorageFailureError``.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _read(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageFailureError(f"storage read failed: {exc}") from exc

    @contextmanager
    def _transact(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as exc:
            raise StorageFailureError(f"storage write failed: {exc}") from exc

    def load_pipe_automations(self, pipe_id: Any, trigger_type: str) -> list[AutomationRecord] | None:
        pipe_uuid = as_uuid(pipe_id)
        if pipe_uuid is None:
            return None
        with tracer.start_as_current_span("automation.store.load_automations") as span:
            span.set_attribute("pipe_id", str(pipe_uuid))
            span.set_attribute("trigger_type", trigger_type)
            with self._read() as session:
                if session.get(Pipe, pipe_uuid) is None:
                    return None
                rows = session.scalars(
                    select(Automation)
                    .where(
                        Automation.pipe_id == pipe_uuid,
                        Automation.enabled.is_(True),
                        Automation.trigger_type == trigger_type,
                    )
                    .order_by(Automation.position.is_(None), Automation.position.asc(), Automation.created_at.asc())
                ).all()
                span.set_attribute("automation_count", len(rows))
                return [self._to_record(row) for row in rows]

    def load_card(self, card_id: Any) -> CardSnapshot | None:
        card_uuid = as_uuid(card_id)
        if card_uuid is None:
            return None
        with self._read() as session:
            card = session.scalar(
                select(Card)
                .where(Card.id == card_uuid)
                .options(
                    selectinload(Card.fields),
                    selectinload(Card.stage).selectinload(Stage.pipe),
                    selectinload(Card.stage).selectinload(Stage.forms),
                    selectinload(Card.submissions).selectinload(FormSubmission.form),
                )
            )
            if card is None:
                return None
            return CardSnapshot(
                id=card.id,
                title=card.title,
                description=card.description,
                fields={item.key: item.value for item in card.fields},
                stage=self._to_stage(card.stage) if card.stage is not None else None,
                submissions=tuple(
                    SubmissionSnapshot(
                        form_id=submission.form_id,
                        form_name=submission.form.name,
                        responses=dict(submission.responses or {}),
                        submitted_at=submission.submitted_at,
                    )
                    for submission in card.submissions
                ),
            )

    def get_stage(self, stage_id: Any) -> StageSnapshot | None:
        stage_uuid = as_uuid(stage_id)
        if stage_uuid is None:
            return None
        with self._read() as session:
            stage = session.scalar(
                select(Stage).where(Stage.id == stage_uuid).options(selectinload(Stage.pipe), selectinload(Stage.forms))
            )
            return self._to_stage(stage) if stage is not None else None

    def get_email_template(self, template_id: Any) -> EmailTemplateSnapshot | None:
        template_uuid = as_uuid(template_id)
        if template_uuid is None:
            return None
        with self._read() as session:
            template = session.get(EmailTemplate, template_uuid)
            if template is None:
                return None
            return EmailTemplateSnapshot(
                id=template.id,
                name=template.name,
                subject=template.subject,
                body=template.body,
                from_email=template.from_email,
                from_name=template.from_name,
                to_email=template.to_email,
                cc=template.cc,
                bcc=template.bcc,
            )

    def move_card(self, card_id: Any, target_stage: StageSnapshot) -> CardMove:
        card_uuid = as_uuid(card_id)
        with tracer.start_as_current_span("automation.store.move_card") as span:
            span.set_attribute("card_id", str(card_id))
            span.set_attribute("stage_id", str(target_stage.id))
            with self._transact() as session:
                card = session.get(Card, card_uuid) if card_uuid is not None else None
                if card is None:
                    raise NotFoundError("Card not found")
                current = session.get(Stage, card.stage_id) if card.stage_id is not None else None
                move = CardMove(
                    card_id=card.id,
                    from_stage_id=current.id if current is not None else None,
                    from_stage_name=current.name if current is not None else None,
                    to_stage_id=target_stage.id,
                    to_stage_name=target_stage.name,
                    pipe_id=target_stage.pipe_id,
                )
                now = utcnow()
                card.stage_id = target_stage.id
                card.updated_at = now
                session.add(
                    CardHistory(
                        card_id=card.id,
                        moved_at=now,
                        from_stage_id=move.from_stage_id,
                        from_stage_name=move.from_stage_name,
                        to_stage_id=move.to_stage_id,
                        to_stage_name=move.to_stage_name,
                    )
                )
            return move

    def upsert_card_field(self, card_id: Any, key: str, value: Any) -> None:
        card_uuid = as_uuid(card_id)
        with self._transact() as session:
            card = session.get(Card, card_uuid) if card_uuid is not None else None
            if card is None:
                raise NotFoundError("Card not found")
            existing = session.scalar(select(CardField).where(CardField.card_id == card.id, CardField.key == key))
            if existing is not None:
                existing.value = value
                existing.updated_at = utcnow()
                return
            position = len(session.scalars(select(CardField.id).where(CardField.card_id == card.id)).all())
            session.add(CardField(card_id=card.id, key=key, type="text", value=value, position=position))

    def append_automation_log(self, entry: AutomationLogEntry) -> uuid.UUID:
        with self._transact() as session:
            row = AutomationLog(
                card_id=entry.card_id,
                automation_id=entry.automation_id,
                executed_at=utcnow(),
                status=entry.status,
                trigger_type=entry.trigger_type,
                conditions_met=entry.conditions_met,
                actions_executed=entry.actions_executed,
                error_message=entry.error_message,
            )
            session.add(row)
            session.flush()
            return row.id

    def list_automation_logs(self, card_id: Any) -> list[AutomationLogRead]:
        card_uuid = as_uuid(card_id)
        if card_uuid is None:
            return []
        with self._read() as session:
            rows = session.scalars(
                select(AutomationLog)
                .where(AutomationLog.card_id == card_uuid)
                .order_by(AutomationLog.executed_at.desc())
            ).all()
            return [AutomationLogRead.model_validate(row) for row in rows]

    def _to_stage(self, stage: Stage) -> StageSnapshot:
        return StageSnapshot(
            id=stage.id,
            name=stage.name,
            pipe_id=stage.pipe_id,
            pipe_name=stage.pipe.name,
            forms=tuple(FormSnapshot(id=form.id, name=form.name) for form in stage.forms),
        )

    def _to_record(self, row: Automation) -> AutomationRecord:
        return AutomationRecord(
            id=row.id,
            pipe_id=row.pipe_id,
            name=row.name,
            trigger_type=row.trigger_type,
            trigger_config=dict(row.trigger_config or {}),
            conditions=dict(row.conditions) if isinstance(row.conditions, dict) else None,
            actions=list(row.actions or []),
            position=row.position,
            created_at=row.created_at,
        )
