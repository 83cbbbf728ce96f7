from __future__ import annotations

import keyword
import re
from collections import deque
from collections.abc import Iterable

from .formulas import FormulaSyntaxError, compile_formula, extract_formula_references
from .models import Field

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_]\w*")

OPERATORS_BY_FIELD_TYPE = {
    "number": {"equals", "not_equals", "greater_than", "less_than", "is_empty", "is_not_empty"},
    "checkbox": {"equals", "not_equals"},
    "text": {"equals", "not_equals", "contains", "not_contains", "is_empty", "is_not_empty"},
}


class ConditionValidationError(ValueError):
    """Raised when field conditions reference fields or operators they cannot use."""


class FormulaValidationError(ValueError):
    """Raised when a formula does not parse or references unknown fields."""


def validate_operator_for_type(field_type: str, operator: str) -> None:
    allowed = OPERATORS_BY_FIELD_TYPE.get(field_type)
    if allowed is None or operator in allowed:
        return
    if field_type == "checkbox":
        raise ConditionValidationError("checkbox fields only support equals/not_equals")
    raise ConditionValidationError(f"operator {operator} not valid for {field_type} fields")


def validate_conditions(fields: Iterable[Field]) -> None:
    field_list = list(fields)
    fields_by_id = {field.id: field for field in field_list}

    for field in field_list:
        for group in field.condition_groups:
            for condition in group.conditions:
                target = fields_by_id.get(condition.field_id)
                if target is None:
                    raise ConditionValidationError(
                        f"field {field.id} references non-existent field {condition.field_id}"
                    )
                if condition.field_id == field.id:
                    raise ConditionValidationError(f"field {field.id} cannot depend on itself")
                try:
                    validate_operator_for_type(target.type, condition.operator)
                except ConditionValidationError as error:
                    raise ConditionValidationError(
                        f"invalid operator {condition.operator} for field type {target.type}: {error}"
                    ) from error


def validate_formula(formula: str | None, fields: Iterable[Field]) -> None:
    if not formula or not formula.strip():
        return

    field_ids = {field.id for field in fields}
    try:
        compile_formula(formula)
    except FormulaSyntaxError as error:
        reserved = [
            word
            for word in IDENTIFIER_PATTERN.findall(formula)
            if word in field_ids and keyword.iskeyword(word)
        ]
        if reserved:
            raise FormulaValidationError(
                f"field id {reserved[0]} is a reserved word and cannot be used in formulas"
            ) from error
        raise FormulaValidationError(str(error)) from error

    for reference in extract_formula_references(formula):
        if reference not in field_ids:
            raise FormulaValidationError(f"formula references non-existent field: {reference}")


def _strongly_connected_groups(graph: dict[str, list[str]], order: list[str]) -> list[list[str]]:
    """Tarjan's algorithm without recursion, so long formula chains stay within the stack."""
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    groups: list[list[str]] = []

    for root in order:
        if root in index:
            continue
        work = [(root, 0)]
        while work:
            node, position = work.pop()
            if position == 0:
                index[node] = low[node] = len(index)
                stack.append(node)
                on_stack.add(node)
            neighbours = graph[node]
            if position < len(neighbours):
                work.append((node, position + 1))
                neighbour = neighbours[position]
                if neighbour not in index:
                    work.append((neighbour, 0))
                elif neighbour in on_stack:
                    low[node] = min(low[node], index[neighbour])
                continue

            if low[node] == index[node]:
                group: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    group.append(member)
                    if member == node:
                        break
                groups.append(group)
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
    return groups


def _shortest_cycle(graph: dict[str, list[str]], start: str, members: set[str]) -> list[str]:
    parents: dict[str, str] = {}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for neighbour in graph[node]:
            if neighbour == start:
                path = [node]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                return path[::-1]
            if neighbour in members and neighbour not in parents:
                parents[neighbour] = node
                queue.append(neighbour)
    return [start]


def find_formula_cycles(fields: Iterable[Field]) -> list[list[str]]:
    """Return one cycle for every group of formula fields that read one another.

    Fields caught in several overlapping cycles form a single group; the
    reported cycle is the shortest one through the group's first field in
    definition order.
    """
    field_list = list(fields)
    formula_ids = [field.id for field in field_list if field.has_formula]
    formula_id_set = set(formula_ids)
    graph: dict[str, list[str]] = {}
    for field in field_list:
        formula = field.formula
        if not formula or not formula.strip():
            continue
        try:
            references = extract_formula_references(formula)
        except (SyntaxError, ValueError):
            references = []
        graph[field.id] = [reference for reference in references if reference in formula_id_set]

    position = {field_id: number for number, field_id in enumerate(formula_ids)}
    cycles: list[list[str]] = []
    for group in _strongly_connected_groups(graph, formula_ids):
        start = min(group, key=position.__getitem__)
        if len(group) == 1 and start not in graph[start]:
            continue
        cycles.append(_shortest_cycle(graph, start, set(group)))
    cycles.sort(key=lambda cycle: position[cycle[0]])
    return cycles


def validate_form_definition(fields: Iterable[Field]) -> list[str]:
    field_list = list(fields)
    errors: list[str] = []

    try:
        validate_conditions(field_list)
    except ConditionValidationError as error:
        errors.append(str(error))

    for field in field_list:
        try:
            validate_formula(field.formula, field_list)
        except FormulaValidationError as error:
            errors.append(f"field {field.id}: {error}")

    for cycle in find_formula_cycles(field_list):
        errors.append("formula cycle: " + " -> ".join([*cycle, cycle[0]]))

    return errors

