from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .models import Field, FieldCondition, FieldConditionGroup, FieldState
from .values import is_empty_value, strict_equals, to_display_string, to_number

logger = logging.getLogger(__name__)


def _compare_missing(condition: FieldCondition) -> bool:
    if condition.operator == "is_empty":
        return True
    if condition.operator == "is_not_empty":
        return False
    # A missing value reads as an empty string for equality checks.
    if condition.operator == "equals":
        return strict_equals("", condition.value)
    if condition.operator == "not_equals":
        return not strict_equals("", condition.value)
    return False


def evaluate_condition(condition: FieldCondition, form_data: Mapping[str, Any]) -> bool:
    value = form_data.get(condition.field_id)
    if value is None:
        return _compare_missing(condition)

    operator = condition.operator
    if operator == "equals":
        return strict_equals(value, condition.value)
    if operator == "not_equals":
        return not strict_equals(value, condition.value)
    if operator == "contains":
        return to_display_string(condition.value) in to_display_string(value)
    if operator == "not_contains":
        return to_display_string(condition.value) not in to_display_string(value)
    if operator == "greater_than":
        return to_number(value) > to_number(condition.value)
    if operator == "less_than":
        return to_number(value) < to_number(condition.value)
    if operator == "is_empty":
        return is_empty_value(value)
    if operator == "is_not_empty":
        return not is_empty_value(value)

    logger.debug("unknown_condition_operator", extra={"operator": operator, "field_id": condition.field_id})
    return False


def evaluate_group(group: FieldConditionGroup, form_data: Mapping[str, Any]) -> bool:
    if group.logic == "AND":
        return all(evaluate_condition(condition, form_data) for condition in group.conditions)
    return any(evaluate_condition(condition, form_data) for condition in group.conditions)


def resolve_field_state(field: Field, form_data: Mapping[str, Any]) -> FieldState:
    """Fold the field's condition groups, in order, into its effective UI state.

    A met group applies its action. An unmet ``show`` group hides the field;
    unmet ``hide``, ``require`` and ``disable`` groups leave the running state
    as it is, so a later group can undo what an earlier one did.
    """
    visible = True
    required = bool(field.required)
    disabled = False

    for group in field.condition_groups:
        if evaluate_group(group, form_data):
            if group.action == "show":
                visible = True
            elif group.action == "hide":
                visible = False
            elif group.action == "require":
                required = True
            elif group.action == "disable":
                disabled = True
        elif group.action == "show":
            visible = False

    return FieldState(visible=visible, required=required, disabled=disabled)


def resolve_field_states(fields: Iterable[Field], form_data: Mapping[str, Any]) -> dict[str, FieldState]:
    return {field.id: resolve_field_state(field, form_data) for field in fields}
