from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any, Callable

from .conditions import resolve_field_states
from .models import EvaluationPass, Field, SettleResult
from .reconciler import FormulaReconciler

DEFAULT_MAX_PASSES = 10

logger = logging.getLogger(__name__)


class FormSession:
    """Host-facing runtime for one form.

    The session keeps references to the host's field list and form data and
    never copies them; every pass reads the live values. The host calls
    ``recompute`` (or ``update``) after each change and ``flush_pending_writes``
    once its own call stack has unwound. ``settle`` runs both until the
    formula fields stop changing.
    """

    def __init__(
        self,
        fields: list[Field],
        form_data: MutableMapping[str, Any],
        extra_functions: dict[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.fields = fields
        self.form_data = form_data
        self.reconciler = FormulaReconciler(extra_functions)

    @property
    def calculated_values(self) -> dict[str, float]:
        return self.reconciler.calculated_values

    def recompute(self) -> EvaluationPass:
        field_states = resolve_field_states(self.fields, self.form_data)
        calculated_values = self.reconciler.recompute(self.fields, self.form_data)
        return EvaluationPass(field_states=field_states, calculated_values=calculated_values)

    def update(self, field_id: str, value: Any) -> EvaluationPass:
        self.form_data[field_id] = value
        return self.recompute()

    def flush_pending_writes(self) -> dict[str, float]:
        return self.reconciler.flush_pending_writes(self.fields, self.form_data)

    def settle(self, max_passes: int = DEFAULT_MAX_PASSES) -> SettleResult:
        if max_passes < 1:
            raise ValueError("max_passes must be at least 1")

        writes: list[dict[str, Any]] = []
        evaluation = self.recompute()
        passes = 1
        converged = False
        while True:
            applied = self.flush_pending_writes()
            if not applied:
                converged = True
                break
            writes.append({"pass": passes, "values": applied})
            if passes >= max_passes:
                break
            evaluation = self.recompute()
            passes += 1

        if not converged:
            # Formulas that feed each other can keep writing; the last pass wins.
            logger.warning(
                "form_settle_incomplete",
                extra={"passes": passes, "last_writes": sorted(writes[-1]["values"])},
            )
            evaluation = EvaluationPass(
                field_states=resolve_field_states(self.fields, self.form_data),
                calculated_values=self.calculated_values,
            )

        return SettleResult(
            field_states=evaluation.field_states,
            calculated_values=evaluation.calculated_values,
            passes=passes,
            converged=converged,
            writes=writes,
        )
