from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from flowlane.automations.coercion import to_text
from flowlane.automations.schemas import (
    TRIGGER_CONFIG_MODELS,
    CardEntersStageTriggerConfig,
    CardFieldValueTriggerConfig,
    FormSubmissionTriggerConfig,
    ManualTriggerConfig,
    TriggerConfig,
    TriggerContext,
)


def parse_trigger_config(trigger_type: str, raw: Any) -> TriggerConfig | None:
    model = TRIGGER_CONFIG_MODELS.get(trigger_type)
    if model is None:
        return None
    try:
        return model.model_validate(raw if isinstance(raw, dict) else {})
    except ValidationError:
        return None


def compare_field_value(operator: str, actual: Any, expected: Any) -> bool:
    actual_text = to_text(actual)
    expected_text = to_text(expected)
    if operator == "equals":
        return actual_text == expected_text
    if operator == "not_equals":
        return actual_text != expected_text
    if operator == "contains":
        return expected_text in actual_text
    return False


def matches(trigger_type: str, trigger_config: Any, context: TriggerContext | None) -> bool:
    """Decide whether an automation's trigger applies to the event that fired.

    Pure and total: never reads storage and never raises. A call made without any
    context matches every automation of the requested trigger type.
    """
    if context is None:
        return True
    config = parse_trigger_config(trigger_type, trigger_config)
    if config is None:
        return False

    if isinstance(config, FormSubmissionTriggerConfig):
        return config.form_id == context.form_id
    if isinstance(config, CardEntersStageTriggerConfig):
        return config.stage_id == context.stage_id
    if isinstance(config, CardFieldValueTriggerConfig):
        if config.field_key != context.field_key:
            return False
        return compare_field_value(config.operator or "equals", context.field_value, config.value)
    if isinstance(config, ManualTriggerConfig):
        return True
    return False
