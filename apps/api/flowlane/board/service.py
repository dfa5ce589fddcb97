from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from flowlane import events
from flowlane.automations.models import Card, CardField, CardHistory, FormSubmission, Stage, StageForm, utcnow
from flowlane.board.schemas import CardFieldUpdateRequest, FormSubmissionCreate


logger = logging.getLogger("flowlane.board")


def _publish(event_type: str, payload: dict[str, Any]) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "version": 1,
            "payload": payload,
        }
    )


class BoardService:
    """User-facing card operations. Each one commits, then announces itself on the event bus."""

    def get_card(self, session: Session, card_id: uuid.UUID) -> Card:
        card = session.scalar(select(Card).where(Card.id == card_id))
        if card is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="card not found")
        return card

    def move_card(self, session: Session, card_id: uuid.UUID, stage_id: uuid.UUID) -> Card:
        card = self.get_card(session, card_id)
        target = session.get(Stage, stage_id)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="stage not found")
        if card.stage_id == target.id:
            return card

        current = session.get(Stage, card.stage_id) if card.stage_id is not None else None
        now = utcnow()
        card.stage_id = target.id
        card.updated_at = now
        session.add(
            CardHistory(
                card_id=card.id,
                moved_at=now,
                from_stage_id=current.id if current is not None else None,
                from_stage_name=current.name if current is not None else None,
                to_stage_id=target.id,
                to_stage_name=target.name,
            )
        )
        session.commit()
        session.refresh(card)
        logger.info("board.card.moved", extra={"card_id": str(card.id), "stage_id": str(target.id)})

        _publish(
            "card.stage_changed",
            {
                "card_id": str(card.id),
                "pipe_id": str(target.pipe_id),
                "stage_id": str(target.id),
                "from_stage_id": str(current.id) if current is not None else None,
            },
        )
        return card

    def set_field_value(self, session: Session, card_id: uuid.UUID, field_key: str, dto: CardFieldUpdateRequest) -> Card:
        card = self.get_card(session, card_id)
        field = session.scalar(select(CardField).where(CardField.card_id == card.id, CardField.key == field_key))
        if field is None:
            field = CardField(card_id=card.id, key=field_key, type=dto.type, value=dto.value, position=len(card.fields))
            session.add(field)
        else:
            field.value = dto.value
        card.updated_at = utcnow()
        session.commit()
        session.refresh(card)

        stage = session.get(Stage, card.stage_id) if card.stage_id is not None else None
        _publish(
            "card.field_changed",
            {
                "card_id": str(card.id),
                "pipe_id": str(stage.pipe_id) if stage is not None else None,
                "field_key": field_key,
                "field_value": dto.value,
            },
        )
        return card

    def submit_form(
        self,
        session: Session,
        card_id: uuid.UUID,
        form_id: uuid.UUID,
        dto: FormSubmissionCreate,
    ) -> FormSubmission:
        card = self.get_card(session, card_id)
        form = session.get(StageForm, form_id)
        if form is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="form not found")

        submission = FormSubmission(
            card_id=card.id,
            form_id=form.id,
            responses=dto.responses,
            submitter_email=dto.submitter_email,
            submitted_at=utcnow(),
        )
        session.add(submission)
        session.commit()
        session.refresh(submission)

        stage = session.get(Stage, form.stage_id)
        _publish(
            "form.submitted",
            {
                "card_id": str(card.id),
                "pipe_id": str(stage.pipe_id) if stage is not None else None,
                "form_id": str(form.id),
                "submission_id": str(submission.id),
            },
        )
        return submission


board_service = BoardService()
