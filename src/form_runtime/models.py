from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

CONDITION_OPERATORS = {
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
}
CONDITION_ACTIONS = {"show", "hide", "require", "disable"}
LOGIC_OPERATORS = {"AND", "OR"}

FIELD_TYPES = {
    "text",
    "number",
    "signature",
    "initials",
    "date",
    "image",
    "file",
    "select",
    "checkbox",
    "multiple",
    "radio",
    "cells",
    "stamp",
    "payment",
    "phone",
}


class FieldDefinitionError(ValueError):
    """Raised when a field definition cannot be used by the runtime."""


def _require_mapping(payload: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise FieldDefinitionError(f"{what} must be an object")
    return payload


def _require_list(payload: Any, what: str) -> list[Any]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise FieldDefinitionError(f"{what} must be a list")
    return payload


@dataclass(slots=True, frozen=True)
class FieldCondition:
    field_id: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FieldCondition:
        payload = _require_mapping(payload, "condition")
        field_id = str(payload.get("field_id") or "").strip()
        if not field_id:
            raise FieldDefinitionError("condition requires a field_id")
        # Unknown operators are kept as-is and evaluate to false.
        return cls(field_id=field_id, operator=str(payload.get("operator") or ""), value=payload.get("value"))

    def to_dict(self) -> dict[str, Any]:
        return {"field_id": self.field_id, "operator": self.operator, "value": self.value}


@dataclass(slots=True, frozen=True)
class FieldConditionGroup:
    logic: str
    conditions: tuple[FieldCondition, ...]
    action: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FieldConditionGroup:
        payload = _require_mapping(payload, "condition group")
        items = _require_list(payload.get("conditions"), "condition group conditions")
        conditions = tuple(FieldCondition.from_dict(item) for item in items)
        if not conditions:
            raise FieldDefinitionError("condition group requires at least one condition")
        logic = str(payload.get("logic") or "AND").strip().upper()
        if logic not in LOGIC_OPERATORS:
            raise FieldDefinitionError(f"unsupported condition logic: {logic}")
        return cls(logic=logic, conditions=conditions, action=str(payload.get("action") or "").strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "logic": self.logic,
            "conditions": [condition.to_dict() for condition in self.conditions],
            "action": self.action,
        }


@dataclass(slots=True, frozen=True)
class Field:
    id: str
    type: str = "text"
    name: str = ""
    required: bool = False
    condition_groups: tuple[FieldConditionGroup, ...] = ()
    formula: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Field:
        payload = _require_mapping(payload, "field definition")
        field_id = str(payload.get("id") or "").strip()
        if not field_id:
            raise FieldDefinitionError("field requires an id")
        formula = payload.get("formula")
        if formula is None:
            preferences = payload.get("preferences") or {}
            formula = _require_mapping(preferences, f"field {field_id} preferences").get("formula")
        groups = _require_list(payload.get("condition_groups"), f"field {field_id} condition_groups")
        return cls(
            id=field_id,
            type=str(payload.get("type") or "text"),
            name=str(payload.get("name") or ""),
            required=bool(payload.get("required", False)),
            condition_groups=tuple(FieldConditionGroup.from_dict(group) for group in groups),
            formula=str(formula) if formula is not None else None,
        )

    @property
    def has_formula(self) -> bool:
        return bool(self.formula and self.formula.strip())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "required": self.required,
        }
        if self.condition_groups:
            payload["condition_groups"] = [group.to_dict() for group in self.condition_groups]
        if self.formula is not None:
            payload["formula"] = self.formula
        return payload


@dataclass(slots=True, frozen=True)
class FieldState:
    visible: bool = True
    required: bool = False
    disabled: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {"visible": self.visible, "required": self.required, "disabled": self.disabled}


@dataclass(slots=True)
class EvaluationPass:
    field_states: dict[str, FieldState]
    calculated_values: dict[str, float]


@dataclass(slots=True)
class SettleResult:
    field_states: dict[str, FieldState]
    calculated_values: dict[str, float]
    passes: int
    converged: bool
    writes: list[dict[str, Any]] = field(default_factory=list)


def parse_fields(payload: Any) -> list[Field]:
    return [Field.from_dict(item) for item in _require_list(payload, "fields")]
