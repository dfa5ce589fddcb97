from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from flowlane.automations.conditions import is_filled
from flowlane.automations.dispatch import EmailDispatcher, EmailMessage
from flowlane.automations.errors import ActionError, InvalidActionError, NotFoundError, ValidationMissingError
from flowlane.automations.schemas import (
    ActionRecord,
    AutomationAction,
    MoveCardAction,
    SendEmailAction,
    SendFormLinkAction,
    UpdateFieldAction,
    automation_action_adapter,
)
from flowlane.automations.store import AutomationStore, CardMove, CardSnapshot, EmailTemplateSnapshot, FormSnapshot
from flowlane.automations.templates import build_form_link, render_template
from flowlane.context import get_correlation_id
from flowlane.metrics import observe_automation_action


logger = logging.getLogger("flowlane.automations.actions")
tracer = trace.get_tracer("flowlane.automations.actions")

ACTION_TYPES = ("send_form_link", "send_email", "move_card", "update_field")

ScheduleCascade = Callable[[CardMove, int], bool]


@dataclass(frozen=True)
class ActionContext:
    card_id: uuid.UUID | str
    pipe_id: uuid.UUID | str
    automation_id: uuid.UUID
    cascade_depth: int = 0


def parse_action(payload: Any) -> AutomationAction:
    action_type = payload.get("type") if isinstance(payload, dict) else None
    if action_type not in ACTION_TYPES:
        raise InvalidActionError(f"Unknown action type: {action_type}")
    try:
        return automation_action_adapter.validate_python(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise InvalidActionError(f"Invalid {action_type} configuration: {fields}") from exc


def default_form_link_body(form_name: str, link: str) -> str:
    return (
        "<p>Hello,</p>"
        f"<p>Please fill out the following form: <strong>{form_name}</strong></p>"
        f'<p><a href="{link}">Open form</a></p>'
        f"<p>Or copy this link: {link}</p>"
    )


class ActionExecutor:
    """Runs one configured action against live card state.

    Each action is attempted exactly once. Failures are returned as an ``error`` record
    instead of raised, except ``StorageFailureError``, which aborts the whole run.
    """

    def __init__(
        self,
        store: AutomationStore,
        email_dispatcher: EmailDispatcher,
        schedule_cascade: ScheduleCascade,
        *,
        app_base_url: str,
    ) -> None:
        self.store = store
        self.email_dispatcher = email_dispatcher
        self.schedule_cascade = schedule_cascade
        self.app_base_url = app_base_url

    def execute(self, payload: Any, ctx: ActionContext) -> ActionRecord:
        raw = payload if isinstance(payload, dict) else {}
        action_type = str(raw.get("type") or "unknown")
        config = raw.get("config") if isinstance(raw.get("config"), dict) else {}

        with tracer.start_as_current_span("automation.action") as span:
            span.set_attribute("action_type", action_type)
            span.set_attribute("automation_id", str(ctx.automation_id))
            span.set_attribute("card_id", str(ctx.card_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                action = parse_action(payload)
                result = self._execute_action(action, ctx)
            except ActionError as exc:
                span.set_status(Status(StatusCode.ERROR, exc.message))
                observe_automation_action(action_type, "error")
                logger.warning(
                    "automation.action.failed",
                    extra={
                        "action_type": action_type,
                        "automation_id": str(ctx.automation_id),
                        "card_id": str(ctx.card_id),
                        "reason": exc.code,
                        "error": exc.message,
                    },
                )
                return ActionRecord(type=action_type, config=config, status="error", error=exc.message)

        observe_automation_action(action_type, "success")
        return ActionRecord(type=action_type, config=config, status="success", result=result)

    def _execute_action(self, action: AutomationAction, ctx: ActionContext) -> dict[str, Any]:
        if isinstance(action, SendFormLinkAction):
            return self._send_form_link(action, ctx)
        if isinstance(action, SendEmailAction):
            return self._send_email(action, ctx)
        if isinstance(action, MoveCardAction):
            return self._move_card(action, ctx)
        if isinstance(action, UpdateFieldAction):
            return self._update_field(action, ctx)
        raise InvalidActionError(f"Unknown action type: {getattr(action, 'type', None)}")

    def _send_form_link(self, action: SendFormLinkAction, ctx: ActionContext) -> dict[str, Any]:
        config = action.config
        card = self._load_card(ctx.card_id)
        template = self._load_template(config.template_id) if config.template_id else None
        recipient = self._resolve_recipient(card, config.recipient_field, template)

        form = card.stage.find_form(config.form_id) if card.stage is not None else None
        if form is None:
            raise NotFoundError("Form not found")

        link = build_form_link(self.app_base_url, card.id, form.id)
        if template is not None:
            context = self._template_context(card, form, link)
            subject = render_template(template.subject, context)
            body = render_template(template.body, context)
        else:
            subject = f"Action Required: Please fill out {form.name}"
            body = default_form_link_body(form.name, link)

        self.email_dispatcher.send(self._message(card, recipient, subject, body, template))
        return {
            "recipientEmail": recipient,
            "formLink": link,
            "templateUsed": template.name if template is not None else None,
        }

    def _send_email(self, action: SendEmailAction, ctx: ActionContext) -> dict[str, Any]:
        config = action.config
        if not config.template_id:
            raise NotFoundError("Email template not found")
        template = self._load_template(config.template_id)
        card = self._load_card(ctx.card_id)
        recipient = self._resolve_recipient(card, config.recipient_field, template)

        form = None
        link = None
        if config.form_id and card.stage is not None:
            form = card.stage.find_form(config.form_id)
            if form is not None:
                link = build_form_link(self.app_base_url, card.id, form.id)

        context = self._template_context(card, form, link)
        subject = render_template(template.subject, context)
        body = render_template(template.body, context)

        self.email_dispatcher.send(self._message(card, recipient, subject, body, template))
        return {"recipientEmail": recipient, "templateId": str(template.id), "subject": subject}

    def _move_card(self, action: MoveCardAction, ctx: ActionContext) -> dict[str, Any]:
        card = self._load_card(ctx.card_id)
        target = self.store.get_stage(action.config.target_stage_id)
        if target is None:
            raise NotFoundError("Target stage not found")

        move = self.store.move_card(card.id, target)
        logger.info(
            "automation.card.moved",
            extra={"card_id": str(card.id), "stage_id": str(target.id), "automation_id": str(ctx.automation_id)},
        )
        cascade_scheduled = self.schedule_cascade(move, ctx.cascade_depth)
        return {
            "movedFrom": move.from_stage_name,
            "movedTo": move.to_stage_name,
            "targetStageId": str(move.to_stage_id),
            "cascadeScheduled": cascade_scheduled,
        }

    def _update_field(self, action: UpdateFieldAction, ctx: ActionContext) -> dict[str, Any]:
        config = action.config
        self.store.upsert_card_field(ctx.card_id, config.field_key, config.value)
        return {"fieldKey": config.field_key, "newValue": config.value}

    def _load_card(self, card_id: Any) -> CardSnapshot:
        card = self.store.load_card(card_id)
        if card is None:
            raise NotFoundError("Card not found")
        return card

    def _load_template(self, template_id: Any) -> EmailTemplateSnapshot:
        template = self.store.get_email_template(template_id)
        if template is None:
            raise NotFoundError("Email template not found")
        return template

    def _resolve_recipient(
        self,
        card: CardSnapshot,
        recipient_field: str | None,
        template: EmailTemplateSnapshot | None,
    ) -> str:
        if recipient_field:
            value = card.fields.get(recipient_field)
            if is_filled(value):
                return str(value).strip()
        if template is not None and template.to_email and template.to_email.strip():
            return template.to_email.strip()
        raise ValidationMissingError(
            "No recipient email found. Set a recipient field on the action or a default To address on the template."
        )

    def _template_context(
        self,
        card: CardSnapshot,
        form: FormSnapshot | None,
        link: str | None,
    ) -> dict[str, dict[str, Any] | None]:
        context: dict[str, dict[str, Any] | None] = {
            "card": {"title": card.title, "description": card.description, "fields": card.fields},
            "form": {"id": str(form.id), "name": form.name, "link": link} if form is not None else None,
            "stage": None,
            "pipe": None,
        }
        if card.stage is not None:
            context["stage"] = {"name": card.stage.name}
            context["pipe"] = {"name": card.stage.pipe_name}
        return context

    def _message(
        self,
        card: CardSnapshot,
        recipient: str,
        subject: str,
        body: str,
        template: EmailTemplateSnapshot | None,
    ) -> EmailMessage:
        return EmailMessage(
            to=recipient,
            subject=subject,
            body=body,
            card_id=card.id,
            from_email=template.from_email if template is not None else None,
            from_name=template.from_name if template is not None else None,
            cc=template.cc if template is not None else None,
            bcc=template.bcc if template is not None else None,
        )
