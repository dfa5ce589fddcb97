from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CardMoveRequest(BaseModel):
    stage_id: UUID


class CardFieldUpdateRequest(BaseModel):
    value: Any = None
    type: str = Field(default="text", min_length=1, max_length=32)


class FormSubmissionCreate(BaseModel):
    responses: dict[str, Any] = Field(default_factory=dict)
    submitter_email: str | None = None


class CardFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    type: str
    value: Any


class CardRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_id: UUID | None
    title: str
    description: str | None
    updated_at: datetime
    fields: list[CardFieldRead] = Field(default_factory=list)


class FormSubmissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    card_id: UUID
    form_id: UUID
    responses: dict[str, Any]
    submitter_email: str | None
    submitted_at: datetime
