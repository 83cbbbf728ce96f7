from __future__ import annotations

import math
import re
from typing import Any

DECIMAL_LITERAL_PATTERN = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
PREFIXED_LITERAL_PATTERN = re.compile(r"^0(?:[xX][0-9a-fA-F]+|[oO][0-7]+|[bB][01]+)$")
INFINITY_LITERALS = {"Infinity": math.inf, "+Infinity": math.inf, "-Infinity": -math.inf}


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def to_number(value: Any) -> float:
    """Convert a form value to a float, NaN when it has no numeric reading.

    Blank strings, None and empty lists read as 0; a single-item list reads as
    its item.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        try:
            return float(value)
        except OverflowError:
            return math.inf if value > 0 else -math.inf
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if DECIMAL_LITERAL_PATTERN.fullmatch(text):
            return float(text)
        if text in INFINITY_LITERALS:
            return INFINITY_LITERALS[text]
        if PREFIXED_LITERAL_PATTERN.fullmatch(text):
            return float(int(text, 0))
        return math.nan
    if isinstance(value, list | tuple):
        if not value:
            return 0.0
        if len(value) == 1:
            return to_number(to_display_string(value[0]))
        return math.nan
    return math.nan


def to_number_or_zero(value: Any) -> float:
    number = to_number(value)
    if math.isnan(number) or number == 0:
        return 0.0
    return number


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def to_display_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list | tuple):
        return ",".join("" if item is None else to_display_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def is_empty_value(value: Any) -> bool:
    # Only sequences get the empty-collection treatment; mappings never read as empty.
    if value is None or value is False:
        return True
    if _is_number(value):
        return value == 0 or value != value
    if isinstance(value, str):
        return value == ""
    if isinstance(value, list | tuple):
        return len(value) == 0
    return False


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without type coercion: ``1 == "1"`` and ``True == 1`` are both false."""
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    return left is right
