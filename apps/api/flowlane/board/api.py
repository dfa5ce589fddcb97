from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from flowlane.api.errors import error_response
from flowlane.board.schemas import (
    CardFieldUpdateRequest,
    CardMoveRequest,
    CardRead,
    FormSubmissionCreate,
    FormSubmissionRead,
)
from flowlane.board.service import board_service
from flowlane.core.database import get_db


router = APIRouter(prefix="/api/cards", tags=["board"])


@router.get("/{card_id}", response_model=CardRead)
def get_card(card_id: uuid.UUID, request: Request, session: Session = Depends(get_db)):
    try:
        return CardRead.model_validate(board_service.get_card(session, card_id))
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="card_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{card_id}/move", response_model=CardRead)
def move_card(card_id: uuid.UUID, dto: CardMoveRequest, request: Request, session: Session = Depends(get_db)):
    try:
        card = board_service.move_card(session, card_id, dto.stage_id)
        return CardRead.model_validate(card)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="card_move_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.put("/{card_id}/fields/{field_key}", response_model=CardRead)
def set_card_field(
    card_id: uuid.UUID,
    field_key: str,
    dto: CardFieldUpdateRequest,
    request: Request,
    session: Session = Depends(get_db),
):
    try:
        card = board_service.set_field_value(session, card_id, field_key, dto)
        return CardRead.model_validate(card)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="card_field_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post(
    "/{card_id}/forms/{form_id}/submissions",
    response_model=FormSubmissionRead,
    status_code=status.HTTP_201_CREATED,
)
def submit_form(
    card_id: uuid.UUID,
    form_id: uuid.UUID,
    dto: FormSubmissionCreate,
    request: Request,
    session: Session = Depends(get_db),
):
    try:
        submission = board_service.submit_form(session, card_id, form_id, dto)
        return FormSubmissionRead.model_validate(submission)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="form_submission_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
