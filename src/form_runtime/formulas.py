from __future__ import annotations

import ast
import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Callable

from .models import Field
from .values import is_empty_value, to_number, to_number_or_zero

logger = logging.getLogger(__name__)

BOOLEAN_NAMES = {"true": True, "false": False}
RESERVED_NAMES = {"and", "or", "not", *BOOLEAN_NAMES}

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Mod,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)
SIGN_OPERATORS = (ast.UAdd, ast.USub)


class FormulaSyntaxError(ValueError):
    """Raised when a formula cannot be parsed into a safe program."""


class FormulaEvaluationError(ValueError):
    """Raised when a parsed formula cannot produce a number."""


def _is_truthy(value: Any) -> bool:
    return not is_empty_value(value)


def _round_half_away_from_zero(number: float) -> float:
    if not math.isfinite(number):
        return number
    return math.copysign(math.floor(abs(number) + 0.5), number)


def formula_sum(*values: Any) -> float:
    return sum((to_number_or_zero(value) for value in values), 0.0)


def formula_if(condition: Any, when_true: Any, when_false: Any) -> Any:
    return when_true if _is_truthy(condition) else when_false


def formula_max(*values: Any) -> float:
    return max((to_number_or_zero(value) for value in values), default=-math.inf)


def formula_min(*values: Any) -> float:
    return min((to_number_or_zero(value) for value in values), default=math.inf)


def formula_round(value: Any, decimals: Any = 0) -> float:
    multiplier = math.pow(10, to_number(decimals))
    return _round_half_away_from_zero(to_number(value) * multiplier) / multiplier


FORMULA_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "SUM": formula_sum,
    "IF": formula_if,
    "MAX": formula_max,
    "MIN": formula_min,
    "ROUND": formula_round,
}


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _modulo(left: float, right: float) -> float:
    try:
        return math.fmod(left, right)
    except ValueError:
        return math.nan


def _power(left: float, right: float) -> float:
    try:
        return math.pow(left, right)
    except OverflowError:
        if left < 0 and right.is_integer() and right % 2 == 1:
            return -math.inf
        return math.inf
    except ValueError:
        if left == 0 and right < 0:
            return math.inf
        return math.nan


BINARY_OPERATIONS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: lambda left, right: left + right,
    ast.Sub: lambda left, right: left - right,
    ast.Mult: lambda left, right: left * right,
    ast.Div: _divide,
    ast.Mod: _modulo,
    ast.Pow: _power,
}

COMPARISONS: dict[type[ast.cmpop], Callable[[float, float], bool]] = {
    ast.Eq: lambda left, right: left == right,
    ast.NotEq: lambda left, right: left != right,
    ast.Gt: lambda left, right: left > right,
    ast.GtE: lambda left, right: left >= right,
    ast.Lt: lambda left, right: left < right,
    ast.LtE: lambda left, right: left <= right,
}


@dataclass(slots=True, frozen=True)
class FormulaProgram:
    """Parsed and validated formula that can be evaluated repeatedly."""

    source: str
    tree: ast.Expression
    references: frozenset[str]


class _ReferencedVariableVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.referenced_variables: list[str] = []

    def visit_Call(self, node: ast.Call) -> Any:
        for argument in node.args:
            self.visit(argument)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id not in RESERVED_NAMES and node.id not in self.referenced_variables:
            self.referenced_variables.append(node.id)


def _is_sign(node: ast.AST) -> bool:
    return isinstance(node, ast.UnaryOp) and isinstance(node.op, SIGN_OPERATORS)


def _to_python_source(formula: str) -> str:
    source = formula.strip()
    if not source:
        raise FormulaSyntaxError("formula is empty")
    for token in ("**", "//"):
        if token in source:
            raise FormulaSyntaxError(f"unexpected token '{token}'")
    return source.replace("^", "**")


def _validate_tree(tree: ast.AST, function_names: set[str]) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise FormulaSyntaxError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Constant) and (
            isinstance(node.value, bool) or not isinstance(node.value, int | float)
        ):
            raise FormulaSyntaxError(f"unsupported literal: {node.value!r}")
        if isinstance(node, ast.Call) and (
            not isinstance(node.func, ast.Name) or node.func.id not in function_names
        ):
            name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            raise FormulaSyntaxError(f"unknown function: {name}")
        if _is_sign(node) and _is_sign(node.operand):
            raise FormulaSyntaxError("unexpected sign operator")
        if isinstance(node, ast.BinOp) and isinstance(node.right, ast.UnaryOp) and isinstance(node.right.op, ast.UAdd):
            raise FormulaSyntaxError("unexpected sign operator")


def compile_formula(formula: str, functions: Mapping[str, Callable[..., Any]] | None = None) -> FormulaProgram:
    resolved_functions = FORMULA_FUNCTIONS if functions is None else functions
    source = _to_python_source(formula)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as error:
        raise FormulaSyntaxError(f"invalid formula syntax: {error.msg}") from error
    _validate_tree(tree, set(resolved_functions))
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return FormulaProgram(source=formula, tree=tree, references=frozenset(visitor.referenced_variables))


def extract_formula_references(formula: str) -> list[str]:
    """Identifiers a formula reads, in first-seen order, without function names."""
    tree = ast.parse(_to_python_source(formula), mode="eval")
    visitor = _ReferencedVariableVisitor()
    visitor.visit(tree)
    return visitor.referenced_variables


def _evaluate_node(node: ast.AST, variables: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]]) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate_node(node.body, variables, functions)
    if isinstance(node, ast.Constant):
        return float(node.value)
    if isinstance(node, ast.Name):
        if node.id in variables:
            return variables[node.id]
        if node.id in BOOLEAN_NAMES:
            return BOOLEAN_NAMES[node.id]
        raise FormulaEvaluationError(f"undefined variable: {node.id}")
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate_node(node.operand, variables, functions)
        if isinstance(node.op, ast.Not):
            return not _is_truthy(operand)
        number = to_number(operand)
        return -number if isinstance(node.op, ast.USub) else number
    if isinstance(node, ast.BinOp):
        left = to_number(_evaluate_node(node.left, variables, functions))
        right = to_number(_evaluate_node(node.right, variables, functions))
        return BINARY_OPERATIONS[type(node.op)](left, right)
    if isinstance(node, ast.BoolOp):
        result: Any = None
        for value in node.values:
            result = _evaluate_node(value, variables, functions)
            if isinstance(node.op, ast.And) and not _is_truthy(result):
                return result
            if isinstance(node.op, ast.Or) and _is_truthy(result):
                return result
        return result
    if isinstance(node, ast.Compare):
        left = to_number(_evaluate_node(node.left, variables, functions))
        for operator, comparator in zip(node.ops, node.comparators, strict=True):
            right = to_number(_evaluate_node(comparator, variables, functions))
            if not COMPARISONS[type(operator)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.Call):
        function_name = node.func.id if isinstance(node.func, ast.Name) else ""
        if function_name not in functions:
            raise FormulaEvaluationError(f"unknown function: {function_name}")
        arguments = [_evaluate_node(argument, variables, functions) for argument in node.args]
        return functions[function_name](*arguments)
    raise FormulaEvaluationError(f"Unsupported expression node: {type(node).__name__}")


def run_formula(
    program: FormulaProgram,
    variables: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> float:
    resolved_functions = FORMULA_FUNCTIONS if functions is None else functions
    result = to_number(_evaluate_node(program.tree, variables, resolved_functions))
    if math.isnan(result):
        raise FormulaEvaluationError("formula result is not a number")
    return result


class FormulaEvaluator:
    """Evaluates formulas against the current form data.

    Every field id is bound as a variable holding the field's value coerced to
    a number, with missing, blank and non-numeric values reading as 0. Any
    failure is logged and reported as ``None``.
    """

    def __init__(
        self,
        fields: Iterable[Field],
        extra_functions: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.field_ids = tuple(field.id for field in fields)
        self.functions: dict[str, Callable[..., Any]] = {**FORMULA_FUNCTIONS, **(extra_functions or {})}
        self._programs: dict[str, FormulaProgram] = {}

    def bind_variables(self, form_data: Mapping[str, Any]) -> dict[str, float]:
        return {field_id: to_number_or_zero(form_data.get(field_id)) for field_id in self.field_ids}

    def compile(self, formula: str) -> FormulaProgram:
        program = self._programs.get(formula)
        if program is None:
            program = compile_formula(formula, self.functions)
            self._programs[formula] = program
        return program

    def evaluate(self, formula: str, form_data: Mapping[str, Any]) -> float | None:
        try:
            program = self.compile(formula)
            return run_formula(program, self.bind_variables(form_data), self.functions)
        except (ArithmeticError, RecursionError, TypeError, ValueError) as error:
            logger.warning(
                "formula_evaluation_failed",
                extra={"formula": formula, "error": str(error), "error_type": type(error).__name__},
            )
            return None


def evaluate_formula(formula: str, fields: Iterable[Field], form_data: Mapping[str, Any]) -> float | None:
    return FormulaEvaluator(fields).evaluate(formula, form_data)
