from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from flowlane.automations.coercion import to_number, to_text
from flowlane.automations.schemas import ConditionRule, Conditions
from flowlane.automations.store import AutomationStore, CardSnapshot


logger = logging.getLogger("flowlane.automations.conditions")

FORM_KEY_PREFIX = "form:"
_FORM_KEY_RE = re.compile(r"^form:([^.]+)\.(.+)$")


def parse_conditions(raw: Any) -> Conditions | None:
    try:
        return Conditions.model_validate(raw)
    except ValidationError:
        return None


def has_rules(conditions: Any) -> bool:
    parsed = parse_conditions(conditions)
    return parsed is not None and len(parsed.rules) > 0


def is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return to_text(value).strip() != ""


def apply_operator(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "is_filled":
        return is_filled(actual)
    if operator == "is_empty":
        return not is_filled(actual)
    if actual is None:
        return False

    if operator == "equals":
        return to_text(actual) == to_text(expected)
    if operator == "not_equals":
        return to_text(actual) != to_text(expected)
    if operator == "contains":
        needle = to_text(expected)
        if isinstance(actual, list):
            return any(needle in to_text(item) for item in actual)
        return needle in to_text(actual)
    if operator == "greater_than":
        return to_number(actual) > to_number(expected)
    if operator == "less_than":
        return to_number(actual) < to_number(expected)
    return False


class ConditionEvaluator:
    def __init__(self, store: AutomationStore) -> None:
        self.store = store

    def evaluate(self, conditions: Any, card_id: Any) -> bool:
        parsed = parse_conditions(conditions)
        if parsed is None:
            return False
        card = self.store.load_card(card_id)
        if card is None:
            logger.warning("automation.conditions.card_missing", extra={"card_id": str(card_id)})
            return False

        results = [self._evaluate_rule(raw_rule, card) for raw_rule in parsed.rules]
        logic = str(parsed.logic or "AND").upper()
        if logic == "OR":
            return any(results)
        return all(results)

    def resolve_value(self, field_key: str, card: CardSnapshot) -> Any:
        form_match = _FORM_KEY_RE.match(field_key)
        if form_match is None:
            if field_key.startswith(FORM_KEY_PREFIX):
                return None
            return card.fields.get(field_key)

        form_ref, response_key = form_match.group(1).strip(), form_match.group(2)
        candidates = [
            submission
            for submission in card.submissions
            if submission.form_name.strip().lower() == form_ref.lower() or str(submission.form_id) == form_ref
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda submission: submission.submitted_at)
        return latest.responses.get(response_key)

    def _evaluate_rule(self, raw_rule: Any, card: CardSnapshot) -> bool:
        try:
            rule = ConditionRule.model_validate(raw_rule)
        except ValidationError:
            return False
        if rule.field_key.startswith(FORM_KEY_PREFIX) and _FORM_KEY_RE.match(rule.field_key) is None:
            return False
        actual = self.resolve_value(rule.field_key, card)
        return apply_operator(rule.operator, actual, rule.value)
