from __future__ import annotations

import copy
import uuid

import pytest

from flowlane.automations.schemas import TriggerContext
from flowlane.automations.triggers import compare_field_value, matches, parse_trigger_config


def test_form_submission_matches_only_configured_form() -> None:
    config = {"formId": "form-1"}

    assert matches("form_submission", config, TriggerContext(form_id="form-1")) is True
    assert matches("form_submission", config, TriggerContext(form_id="form-2")) is False
    assert matches("form_submission", config, TriggerContext()) is False


def test_card_enters_stage_matches_stage_id_from_wire_context() -> None:
    stage_id = uuid.uuid4()
    config = {"stageId": str(stage_id)}

    assert matches("card_enters_stage", config, TriggerContext.model_validate({"stageId": str(stage_id)})) is True
    assert matches("card_enters_stage", config, TriggerContext(stage_id=stage_id)) is True
    assert matches("card_enters_stage", config, TriggerContext(stage_id=uuid.uuid4())) is False


def test_card_field_value_defaults_to_equals_on_string_coercion() -> None:
    config = {"fieldKey": "score", "value": 5}

    assert matches("card_field_value", config, TriggerContext(field_key="score", field_value="5")) is True
    assert matches("card_field_value", config, TriggerContext(field_key="score", field_value=5.0)) is True
    assert matches("card_field_value", config, TriggerContext(field_key="score", field_value="6")) is False
    assert matches("card_field_value", config, TriggerContext(field_key="other", field_value="5")) is False


@pytest.mark.parametrize("operator", [None, ""])
def test_card_field_value_blank_operator_falls_back_to_equals(operator: str | None) -> None:
    config = {"fieldKey": "status", "operator": operator, "value": "done"}

    assert matches("card_field_value", config, TriggerContext(field_key="status", field_value="done")) is True
    assert matches("card_field_value", config, TriggerContext(field_key="status", field_value="open")) is False


@pytest.mark.parametrize(
    ("operator", "actual", "expected", "result"),
    [
        ("equals", "approved", "approved", True),
        ("not_equals", "approved", "rejected", True),
        ("not_equals", "approved", "approved", False),
        ("contains", "pre-approved", "approved", True),
        ("contains", "pending", "approved", False),
        ("equals", True, "true", True),
        ("greater_than", "10", "5", False),
    ],
)
def test_compare_field_value_operators(operator: str, actual: object, expected: object, result: bool) -> None:
    assert compare_field_value(operator, actual, expected) is result


def test_card_field_value_with_unknown_operator_never_matches() -> None:
    config = {"fieldKey": "status", "operator": "starts_with", "value": "app"}

    assert matches("card_field_value", config, TriggerContext(field_key="status", field_value="approved")) is False


def test_manual_trigger_always_matches() -> None:
    assert matches("manual", {}, TriggerContext()) is True
    assert matches("manual", {"anything": 1}, TriggerContext(stage_id="s1")) is True


def test_absent_context_matches_unconditionally() -> None:
    assert matches("form_submission", {"formId": "form-1"}, None) is True
    assert matches("card_enters_stage", {}, None) is True
    assert matches("not_a_trigger", {}, None) is True


def test_unknown_trigger_type_or_malformed_config_does_not_match() -> None:
    assert matches("not_a_trigger", {}, TriggerContext()) is False
    assert matches("card_enters_stage", {"formId": "f"}, TriggerContext(stage_id="s1")) is False
    assert matches("card_field_value", "not-a-dict", TriggerContext(field_key="x")) is False
    assert parse_trigger_config("card_enters_stage", {"stageId": "s1"}) is not None
    assert parse_trigger_config("card_enters_stage", None) is None


def test_matcher_is_pure() -> None:
    config = {"fieldKey": "status", "operator": "contains", "value": "ok"}
    snapshot = copy.deepcopy(config)
    context = TriggerContext(field_key="status", field_value="all ok")

    results = {matches("card_field_value", config, context) for _ in range(5)}

    assert results == {True}
    assert config == snapshot
    assert context.field_value == "all ok"
