from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Callable

from .formulas import FormulaEvaluator
from .models import Field
from .values import strict_equals

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _PendingPass:
    values: dict[str, float]
    previous: dict[str, float]


class FormulaReconciler:
    """Keeps formula fields in sync with the form data they are computed from.

    ``recompute`` evaluates every formula field and only queues the write-back.
    The queued values reach the form data when ``flush_pending_writes`` runs,
    after the recomputation call has returned, so a write never re-enters the
    pass that produced it. The queue holds one pass; a newer pass replaces an
    unflushed one.
    """

    def __init__(self, extra_functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self.extra_functions = dict(extra_functions or {})
        self.calculated_values: dict[str, float] = {}
        self._pending: _PendingPass | None = None
        self._evaluator: FormulaEvaluator | None = None
        self._evaluator_key: tuple[str, ...] = ()

    @property
    def has_pending_writes(self) -> bool:
        return self._pending is not None

    def _evaluator_for(self, fields: list[Field]) -> FormulaEvaluator:
        key = tuple(field.id for field in fields)
        if self._evaluator is None or key != self._evaluator_key:
            self._evaluator = FormulaEvaluator(fields, self.extra_functions)
            self._evaluator_key = key
        return self._evaluator

    def calculate(self, fields: Iterable[Field], form_data: Mapping[str, Any]) -> dict[str, float]:
        field_list = list(fields)
        evaluator = self._evaluator_for(field_list)
        values: dict[str, float] = {}
        for field in field_list:
            formula = field.formula
            if not formula or not formula.strip():
                continue
            result = evaluator.evaluate(formula, form_data)
            if result is not None:
                values[field.id] = result
        return values

    def recompute(self, fields: Iterable[Field], form_data: Mapping[str, Any]) -> dict[str, float]:
        values = self.calculate(fields, form_data)
        self._pending = _PendingPass(values=values, previous=self.calculated_values)
        self.calculated_values = values
        return values

    def flush_pending_writes(self, fields: Iterable[Field], form_data: MutableMapping[str, Any]) -> dict[str, float]:
        pending, self._pending = self._pending, None
        if pending is None:
            return {}

        formula_fields = {field.id for field in fields if field.has_formula}
        applied: dict[str, float] = {}
        for field_id, value in pending.values.items():
            if field_id not in formula_fields:
                continue
            previous = pending.previous.get(field_id)
            if previous is not None and strict_equals(previous, value):
                continue
            if strict_equals(form_data.get(field_id), value):
                continue
            form_data[field_id] = value
            applied[field_id] = value

        if applied:
            logger.debug("formula_write_back", extra={"writes": applied})
        return applied
