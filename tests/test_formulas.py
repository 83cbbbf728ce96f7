import logging
import math

import pytest

from form_runtime.formulas import (
    FormulaEvaluator,
    FormulaSyntaxError,
    compile_formula,
    evaluate_formula,
    extract_formula_references,
    run_formula,
)
from form_runtime.models import Field

FIELDS = [
    Field(id="field_1", type="number", name="Field 1"),
    Field(id="field_2", type="number", name="Field 2"),
    Field(id="field_3", type="number", name="Field 3"),
    Field(id="calculated_field", type="number", name="Calculated Field", formula="field_1 + field_2"),
]


def evaluate(formula: str, **overrides):
    form_data = {"field_1": 10, "field_2": 20, "field_3": 5, "calculated_field": 0}
    form_data.update(overrides)
    return evaluate_formula(formula, FIELDS, form_data)


def test_basic_arithmetic() -> None:
    assert evaluate("field_1 + field_2") == 30
    assert evaluate("field_1 - field_2") == -10
    assert evaluate("field_1 * field_2") == 200
    assert evaluate("field_1 / field_2") == 0.5
    assert evaluate("field_2 % field_3") == 0


def test_precedence_and_parentheses() -> None:
    assert evaluate("field_1 + field_2 * field_3") == 110
    assert evaluate("(field_1 + field_2) * field_3") == 150
    assert evaluate("field_1 - field_2 - field_3") == -15
    assert evaluate("field_3 + field_1 ^ 2") == 105
    assert evaluate("2 ^ 3 ^ 2") == 512


def test_division_by_zero_yields_signed_infinity() -> None:
    assert evaluate("field_1 / field_2", field_1=20, field_2=0) == math.inf
    assert evaluate("field_1 / field_2", field_1=-20, field_2=0) == -math.inf
    assert evaluate("field_1 / field_2", field_1=0, field_2=0) is None


def test_sum_function() -> None:
    assert evaluate("SUM(10, 20, 5)") == 35
    assert evaluate("SUM(field_1, field_2, field_3)") == 35
    assert evaluate("SUM(field_1, field_2)", field_1="abc") == 20
    assert evaluate("SUM()") == 0


def test_if_function() -> None:
    assert evaluate("IF(field_1 > 5, 100, 0)") == 100
    assert evaluate("IF(field_1 < 5, 100, 0)") == 0
    assert evaluate("IF(field_1 == 10, 50, 0)") == 50
    assert evaluate("IF(field_1 != 10, 50, 0)") == 0
    assert evaluate("IF(field_1 > 5, IF(field_2 > 15, 200, 100), 0)") == 200
    assert evaluate("IF(field_1 > 5 and field_2 < 5, 1, 2)") == 2


def test_max_and_min_functions() -> None:
    assert evaluate("MAX(10, 20, 5)") == 20
    assert evaluate("MIN(10, 20, 5)") == 5
    assert evaluate("MAX(field_1, field_2)", field_1=-10, field_2=-20) == -10
    assert evaluate("MIN(field_1, field_2)", field_1=-10, field_2=-20) == -20
    assert evaluate("MAX(field_1, field_2)", field_1="abc", field_2=-5) == 0
    assert evaluate("MAX()") == -math.inf
    assert evaluate("MIN()") == math.inf


def test_round_function() -> None:
    assert evaluate("ROUND(10.567, 2)") == 10.57
    assert evaluate("ROUND(10.4)") == 10
    assert evaluate("ROUND(10.567, 0)") == 11
    assert evaluate("ROUND(10.564, 2)") == 10.56
    assert evaluate("ROUND(2.5)") == 3
    assert evaluate("ROUND(-2.5)") == -3


def test_variable_substitution_coerces_to_number() -> None:
    assert evaluate("field_1 + field_2", field_1="15") == 35
    assert evaluate("field_1 + field_2", field_1=" 12 ") == 32
    assert evaluate("field_1 + field_2", field_1="abc") == 20
    assert evaluate("field_1 + field_2", field_1=None) == 20
    assert evaluate("field_1 + field_2", field_1="") == 20
    assert evaluate("field_1 + field_2", field_1=True) == 21
    assert evaluate_formula("field_1 + field_2", FIELDS, {"field_2": 20}) == 20


def test_number_edge_cases() -> None:
    assert evaluate("field_1 + field_2", field_1=1e10, field_2=2e10) == 3e10
    assert evaluate("field_1 + field_2", field_1=0.0001, field_2=0.0002) == pytest.approx(0.0003)
    assert evaluate("field_1 + field_2", field_1=-10, field_2=-20) == -30
    assert evaluate("field_1 * 0.1") == 1
    assert evaluate("field_1 > 5") == 1


def test_invalid_formulas_return_none() -> None:
    assert evaluate("field_1 + + field_2") is None
    assert evaluate("SUM(field_1, field_2") is None
    assert evaluate("UNKNOWN_FUNCTION(field_1)") is None
    assert evaluate("") is None
    assert evaluate("invalid formula syntax") is None
    assert evaluate("unknown_field + 1") is None
    assert evaluate("field_1 ** 2") is None
    assert evaluate("IF(field_1 > 5, 1)") is None
    assert evaluate("--field_1") is None


def test_failures_are_logged(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="form_runtime.formulas"):
        assert evaluate("SUM(field_1,") is None

    messages = [record.getMessage() for record in caplog.records]
    assert "formula_evaluation_failed" in messages
    assert caplog.records[-1].formula == "SUM(field_1,"


def test_compile_formula_rejects_unsafe_syntax() -> None:
    for formula in ("field_1.real", "'text'", "field_1[0]", "__import__('os')", "1 if field_1 else 2", "SUM(x=1)"):
        with pytest.raises(FormulaSyntaxError):
            compile_formula(formula)


def test_compiled_program_is_reusable() -> None:
    program = compile_formula("price * quantity")
    assert program.references == frozenset({"price", "quantity"})
    assert run_formula(program, {"price": 9, "quantity": 2}) == 18
    assert run_formula(program, {"price": 11, "quantity": 3}) == 33


def test_extract_formula_references_skips_function_names() -> None:
    references = extract_formula_references("SUM(field_1, field_2) + field_1 * rate + IF(true, 1, 0)")
    assert references == ["field_1", "field_2", "rate"]


def test_evaluator_accepts_extra_functions() -> None:
    evaluator = FormulaEvaluator(FIELDS, extra_functions={"DOUBLE": lambda value: value * 2})
    assert evaluator.evaluate("DOUBLE(field_1)", {"field_1": 6}) == 12
    assert evaluator.evaluate("SUM(DOUBLE(field_1), field_2)", {"field_1": 6, "field_2": 1}) == 13
