from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flowlane.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Pipe(Base):
    __tablename__ = "pipe"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stages: Mapped[list[Stage]] = relationship(back_populates="pipe", order_by="Stage.position")


class Stage(Base):
    __tablename__ = "stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipe_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pipe.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    pipe: Mapped[Pipe] = relationship(back_populates="stages")
    forms: Mapped[list[StageForm]] = relationship(back_populates="stage", order_by="StageForm.created_at")


class StageForm(Base):
    __tablename__ = "stage_form"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stage.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    form_type: Mapped[str] = mapped_column(String(16), nullable=False, default="client", server_default="client")
    fields: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stage: Mapped[Stage] = relationship(back_populates="forms")


class Card(Base):
    __tablename__ = "card"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("stage.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stage: Mapped[Stage | None] = relationship()
    fields: Mapped[list[CardField]] = relationship(back_populates="card", order_by="CardField.position")
    submissions: Mapped[list[FormSubmission]] = relationship(back_populates="card")


class CardField(Base):
    __tablename__ = "card_field"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("card.id", ondelete="CASCADE"), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="text", server_default="text")
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    card: Mapped[Card] = relationship(back_populates="fields")


class FormSubmission(Base):
    __tablename__ = "form_submission"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("card.id", ondelete="CASCADE"), nullable=False)
    form_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("stage_form.id", ondelete="CASCADE"), nullable=False)
    responses: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    submitter_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    card: Mapped[Card] = relationship(back_populates="submissions")
    form: Mapped[StageForm] = relationship()


class CardHistory(Base):
    __tablename__ = "card_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("card.id", ondelete="CASCADE"), nullable=False)
    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    from_stage_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_stage_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    to_stage_name: Mapped[str] = mapped_column(Text, nullable=False)


class EmailTemplate(Base):
    __tablename__ = "email_template"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipe_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("pipe.id", ondelete="CASCADE"), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    from_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    cc: Mapped[str | None] = mapped_column(Text, nullable=True)
    bcc: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Automation(Base):
    __tablename__ = "automation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipe_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pipe.id", ondelete="CASCADE"), nullable=False)
    stage_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("stage.id", ondelete="SET NULL"), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AutomationLog(Base):
    __tablename__ = "automation_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    card_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("card.id", ondelete="CASCADE"), nullable=False)
    automation_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("automation.id", ondelete="CASCADE"), nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    conditions_met: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    actions_executed: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


Index("ix_stage_pipe_id", Stage.pipe_id)
Index("ix_stage_form_stage_id", StageForm.stage_id)
Index("ix_card_stage_id", Card.stage_id)
Index("ix_card_field_card_id_key", CardField.card_id, CardField.key)
Index("ix_form_submission_card_id", FormSubmission.card_id)
Index("ix_card_history_card_id", CardHistory.card_id)
Index("ix_automation_pipe_trigger", Automation.pipe_id, Automation.trigger_type, Automation.enabled)
Index("ix_automation_log_card_id", AutomationLog.card_id)
Index("ix_automation_log_automation_id", AutomationLog.automation_id)
