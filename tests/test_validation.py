import pytest

from form_runtime.models import FieldDefinitionError, parse_fields
from form_runtime.validation import (
    ConditionValidationError,
    FormulaValidationError,
    find_formula_cycles,
    validate_conditions,
    validate_form_definition,
    validate_formula,
)


def fields_with_condition(target_type: str, operator: str, target_id: str = "target"):
    return parse_fields(
        [
            {"id": "target", "type": target_type},
            {
                "id": "dependent",
                "type": "text",
                "condition_groups": [
                    {
                        "logic": "AND",
                        "conditions": [{"field_id": target_id, "operator": operator, "value": "x"}],
                        "action": "show",
                    }
                ],
            },
        ]
    )


def test_validate_conditions_accepts_valid_definition() -> None:
    validate_conditions(fields_with_condition("text", "contains"))
    validate_conditions(fields_with_condition("number", "greater_than"))
    validate_conditions(fields_with_condition("checkbox", "equals"))
    validate_conditions(fields_with_condition("select", "contains"))


def test_validate_conditions_rejects_unknown_reference() -> None:
    with pytest.raises(ConditionValidationError, match="field dependent references non-existent field ghost"):
        validate_conditions(fields_with_condition("text", "equals", target_id="ghost"))


def test_validate_conditions_rejects_self_dependency() -> None:
    fields = parse_fields(
        [
            {
                "id": "loop",
                "type": "text",
                "condition_groups": [
                    {"logic": "OR", "conditions": [{"field_id": "loop", "operator": "is_empty"}], "action": "hide"}
                ],
            }
        ]
    )
    with pytest.raises(ConditionValidationError, match="cannot depend on itself"):
        validate_conditions(fields)


def test_validate_conditions_checks_operator_against_field_type() -> None:
    with pytest.raises(ConditionValidationError, match="checkbox fields only support equals/not_equals"):
        validate_conditions(fields_with_condition("checkbox", "is_empty"))
    with pytest.raises(ConditionValidationError, match="operator contains not valid for number fields"):
        validate_conditions(fields_with_condition("number", "contains"))
    with pytest.raises(ConditionValidationError, match="invalid operator greater_than for field type text"):
        validate_conditions(fields_with_condition("text", "greater_than"))


def test_validate_formula() -> None:
    fields = parse_fields([{"id": "field_1"}, {"id": "field_2"}])

    validate_formula("", fields)
    validate_formula("ROUND(SUM(field_1, field_2) / 2, 2)", fields)

    with pytest.raises(FormulaValidationError, match="non-existent field: field_9"):
        validate_formula("field_1 + field_9", fields)
    with pytest.raises(FormulaValidationError, match="invalid formula syntax"):
        validate_formula("SUM(field_1, field_2", fields)
    with pytest.raises(FormulaValidationError, match="unknown function: AVG"):
        validate_formula("AVG(field_1, field_2)", fields)


def test_find_formula_cycles() -> None:
    fields = parse_fields(
        [
            {"id": "price"},
            {"id": "a", "formula": "b + 1"},
            {"id": "b", "formula": "a * price"},
            {"id": "c", "formula": "c + 1"},
            {"id": "d", "formula": "price * 2"},
            {"id": "e", "formula": "d + 1"},
        ]
    )
    assert find_formula_cycles(fields) == [["a", "b"], ["c"]]
    assert find_formula_cycles(parse_fields([{"id": "x"}, {"id": "y", "formula": "x * 2"}])) == []


def test_validate_form_definition_collects_every_problem() -> None:
    fields = parse_fields(
        [
            {"id": "qty", "type": "number"},
            {"id": "total", "type": "number", "formula": "qty * unit_price"},
            {"id": "a", "type": "number", "formula": "b"},
            {"id": "b", "type": "number", "formula": "a"},
            {
                "id": "notes",
                "type": "text",
                "condition_groups": [
                    {"logic": "AND", "conditions": [{"field_id": "qty", "operator": "contains"}], "action": "show"}
                ],
            },
        ]
    )
    errors = validate_form_definition(fields)
    assert errors == [
        "invalid operator contains for field type number: operator contains not valid for number fields",
        "field total: formula references non-existent field: unit_price",
        "formula cycle: a -> b -> a",
    ]
    assert validate_form_definition(parse_fields([{"id": "qty", "type": "number"}])) == []


def test_find_formula_cycles_reports_overlapping_cycles_once() -> None:
    fields = parse_fields(
        [
            {"id": "a", "formula": "b + 1"},
            {"id": "b", "formula": "c + a"},
            {"id": "c", "formula": "b * 2"},
            {"id": "x", "formula": "y"},
            {"id": "y", "formula": "z"},
            {"id": "z", "formula": "x"},
        ]
    )
    assert find_formula_cycles(fields) == [["a", "b"], ["x", "y", "z"]]


def test_find_formula_cycles_handles_long_chains() -> None:
    count = 3000
    fields = parse_fields([{"id": f"f{n}", "formula": f"f{(n + 1) % count} + 1"} for n in range(count)])
    cycles = find_formula_cycles(fields)
    assert len(cycles) == 1
    assert cycles[0][:3] == ["f0", "f1", "f2"]
    assert len(cycles[0]) == count

    chain = parse_fields([{"id": "f0"}, *({"id": f"f{n}", "formula": f"f{n - 1} + 1"} for n in range(1, count))])
    assert find_formula_cycles(chain) == []


def test_validate_formula_names_reserved_word_field_ids() -> None:
    fields = parse_fields([{"id": "from"}, {"id": "None"}, {"id": "total"}])
    with pytest.raises(FormulaValidationError, match="field id from is a reserved word"):
        validate_formula("from + 1", fields)
    with pytest.raises(FormulaValidationError, match="field id None is a reserved word"):
        validate_formula("None * total", fields)
    with pytest.raises(FormulaValidationError, match="invalid formula syntax"):
        validate_formula("total +", fields)


def test_parse_fields_rejects_structurally_invalid_definitions() -> None:
    with pytest.raises(FieldDefinitionError, match="fields must be a list"):
        parse_fields({"id": "a"})
    with pytest.raises(FieldDefinitionError, match="field definition must be an object"):
        parse_fields(["a"])
    with pytest.raises(FieldDefinitionError, match="field a preferences must be an object"):
        parse_fields([{"id": "a", "preferences": ["SUM(b)"]}])
    assert parse_fields(None) == []
    assert parse_fields([{"id": "a", "preferences": {"formula": "b + 1"}}])[0].formula == "b + 1"
