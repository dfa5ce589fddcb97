from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter


TriggerType = Literal["form_submission", "card_enters_stage", "card_field_value", "manual"]
ExecutionStatus = Literal["success", "skipped", "error"]
ActionStatus = Literal["success", "error"]


def _id_to_text(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


IdText = Annotated[str, BeforeValidator(_id_to_text)]
OptionalIdText = Annotated[str | None, BeforeValidator(_id_to_text)]


class StoredConfig(BaseModel):
    """Base for JSON written by the rule-authoring UI: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FormSubmissionTriggerConfig(StoredConfig):
    form_id: IdText = Field(alias="formId")


class CardEntersStageTriggerConfig(StoredConfig):
    stage_id: IdText = Field(alias="stageId")


class CardFieldValueTriggerConfig(StoredConfig):
    field_key: str = Field(alias="fieldKey")
    operator: str | None = None
    value: Any = None


class ManualTriggerConfig(StoredConfig):
    pass


TriggerConfig = FormSubmissionTriggerConfig | CardEntersStageTriggerConfig | CardFieldValueTriggerConfig | ManualTriggerConfig

TRIGGER_CONFIG_MODELS: dict[str, type[StoredConfig]] = {
    "form_submission": FormSubmissionTriggerConfig,
    "card_enters_stage": CardEntersStageTriggerConfig,
    "card_field_value": CardFieldValueTriggerConfig,
    "manual": ManualTriggerConfig,
}


class TriggerContext(StoredConfig):
    form_id: OptionalIdText = Field(default=None, alias="formId")
    stage_id: OptionalIdText = Field(default=None, alias="stageId")
    field_key: str | None = Field(default=None, alias="fieldKey")
    field_value: Any = Field(default=None, alias="fieldValue")


class ConditionRule(StoredConfig):
    field_key: str = Field(alias="fieldKey")
    operator: str
    value: Any = None


class Conditions(StoredConfig):
    """Rule set stored on an automation. Rules stay raw so one malformed rule fails alone."""

    logic: Any = "AND"
    rules: list[Any] = Field(default_factory=list)


class SendFormLinkConfig(StoredConfig):
    form_id: IdText = Field(alias="formId")
    recipient_field: str | None = Field(default=None, alias="recipientField")
    template_id: OptionalIdText = Field(default=None, alias="templateId")


class SendEmailConfig(StoredConfig):
    template_id: OptionalIdText = Field(default=None, alias="templateId")
    recipient_field: str | None = Field(default=None, alias="recipientField")
    form_id: OptionalIdText = Field(default=None, alias="formId")


class MoveCardConfig(StoredConfig):
    target_stage_id: IdText = Field(alias="targetStageId")


class UpdateFieldConfig(StoredConfig):
    field_key: str = Field(alias="fieldKey", min_length=1)
    value: Any = None


class SendFormLinkAction(BaseModel):
    type: Literal["send_form_link"]
    config: SendFormLinkConfig


class SendEmailAction(BaseModel):
    type: Literal["send_email"]
    config: SendEmailConfig


class MoveCardAction(BaseModel):
    type: Literal["move_card"]
    config: MoveCardConfig


class UpdateFieldAction(BaseModel):
    type: Literal["update_field"]
    config: UpdateFieldConfig


AutomationAction = Annotated[
    SendFormLinkAction | SendEmailAction | MoveCardAction | UpdateFieldAction,
    Field(discriminator="type"),
]

automation_action_adapter = TypeAdapter(AutomationAction)


class ActionRecord(BaseModel):
    type: str
    config: dict[str, Any]
    status: ActionStatus
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_log_entry(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"type": self.type, "config": self.config, "status": self.status}
        if self.status == "success":
            entry["result"] = self.result
        else:
            entry["error"] = self.error
        return entry


class AutomationExecution(BaseModel):
    status: ExecutionStatus
    conditions_met: bool | None = None
    actions_executed: list[ActionRecord] = Field(default_factory=list)
    error_message: str | None = None


class AutomationReportDetail(BaseModel):
    name: str
    id: UUID
    matched: bool
    trigger_config: dict[str, Any]
    execution: AutomationExecution | None = None


class AutomationReport(BaseModel):
    automations_found: int = 0
    automations_matched: int = 0
    automations_executed: list[str] = Field(default_factory=list)
    automations_skipped: list[str] = Field(default_factory=list)
    automations_failed: list[str] = Field(default_factory=list)
    details: list[AutomationReportDetail] = Field(default_factory=list)


class RunAutomationsRequest(BaseModel):
    trigger_type: TriggerType
    card_id: UUID
    pipe_id: UUID
    context: TriggerContext | None = None


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    card_id: UUID
    automation_id: UUID
    executed_at: datetime
    status: ExecutionStatus
    trigger_type: str
    conditions_met: bool | None
    actions_executed: list[dict[str, Any]]
    error_message: str | None
