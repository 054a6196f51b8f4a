"""
The fixed function library callable from expression trees.

Every function takes its already-evaluated arguments plus the evaluation
context. The set is closed: a callee not in ``FUNCTIONS`` fails with
``UnknownFunction``.
"""

from __future__ import annotations

import math
import random
import re
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from dateutil.relativedelta import relativedelta

from ..errors import ExpressionEvaluationError
from .coercion import (
    is_date_like,
    is_nan,
    is_truthy,
    normalize_number,
    strict_equals,
    to_datetime,
    to_epoch_millis,
    to_number,
    to_string,
)

ExpressionFunction = Callable[[list[Any], dict[str, Any]], Any]

# Context keys for injecting deterministic generators in tests.
AUTO_NUMBER_KEY = "$AUTO_NUMBER"
UUID_KEY = "$UUID"

_MS_PER_DAY = 86_400_000


def _arg(args: list[Any], index: int, default: Any = None) -> Any:
    return args[index] if index < len(args) else default


def _int_arg(args: list[Any], index: int, default: int = 0) -> int:
    value = to_number(_arg(args, index, default))
    if is_nan(value) or math.isinf(value):
        return default
    return int(value)


def _flatten(args: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for arg in args:
        if isinstance(arg, list | tuple):
            flat.extend(_flatten(list(arg)))
        else:
            flat.append(arg)
    return flat


def _numbers(args: list[Any]) -> list[float | int]:
    """Numeric view of the arguments; non-numeric values count as 0."""
    result = []
    for value in _flatten(args):
        number = to_number(value)
        result.append(0 if is_nan(number) else number)
    return result


# =============================================================================
# String functions
# =============================================================================


def _concat(args: list[Any], ctx: dict[str, Any]) -> str:
    return "".join(to_string(arg) for arg in args)


def _trim(args: list[Any], ctx: dict[str, Any]) -> str:
    return to_string(_arg(args, 0)).strip()


def _length(args: list[Any], ctx: dict[str, Any]) -> int:
    return len(to_string(_arg(args, 0)))


def _upper(args: list[Any], ctx: dict[str, Any]) -> str:
    return to_string(_arg(args, 0)).upper()


def _lower(args: list[Any], ctx: dict[str, Any]) -> str:
    return to_string(_arg(args, 0)).lower()


def _contains(args: list[Any], ctx: dict[str, Any]) -> bool:
    return to_string(_arg(args, 1)) in to_string(_arg(args, 0))


def _matches(args: list[Any], ctx: dict[str, Any]) -> bool:
    pattern = to_string(_arg(args, 1))
    try:
        return re.search(pattern, to_string(_arg(args, 0))) is not None
    except re.error as e:
        raise ExpressionEvaluationError(f"Invalid pattern {pattern!r}: {e}") from e


def _substring(args: list[Any], ctx: dict[str, Any]) -> str:
    text = to_string(_arg(args, 0))
    start = max(_int_arg(args, 1), 0)
    if len(args) > 2:
        return text[start : start + max(_int_arg(args, 2), 0)]
    return text[start:]


# =============================================================================
# Numeric functions
# =============================================================================


def _sum(args: list[Any], ctx: dict[str, Any]) -> Any:
    return normalize_number(sum(_numbers(args)))


def _avg(args: list[Any], ctx: dict[str, Any]) -> Any:
    values = [to_number(value) for value in _flatten(args)]
    values = [value for value in values if not is_nan(value)]
    if not values:
        return 0
    return normalize_number(sum(values) / len(values))


def _min(args: list[Any], ctx: dict[str, Any]) -> Any:
    values = _numbers(args)
    return normalize_number(min(values)) if values else 0


def _max(args: list[Any], ctx: dict[str, Any]) -> Any:
    values = _numbers(args)
    return normalize_number(max(values)) if values else 0


def _round(args: list[Any], ctx: dict[str, Any]) -> Any:
    value = _numbers(args[:1])
    number = value[0] if value else 0
    digits = _int_arg(args, 1)
    if math.isinf(number):
        return number
    try:
        quantum = Decimal(1).scaleb(-digits)
        rounded = Decimal(str(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ExpressionEvaluationError(f"Cannot round {number!r}") from e
    return normalize_number(float(rounded)) if digits > 0 else int(rounded)


def _unary_math(fn: Callable[[float], Any]) -> ExpressionFunction:
    def apply(args: list[Any], ctx: dict[str, Any]) -> Any:
        values = _numbers(args[:1])
        number = values[0] if values else 0
        if math.isinf(number):
            return number
        return normalize_number(fn(number))

    return apply


# =============================================================================
# Date functions
# =============================================================================


def _year(args: list[Any], ctx: dict[str, Any]) -> int:
    return to_datetime(_arg(args, 0)).year


def _month(args: list[Any], ctx: dict[str, Any]) -> int:
    return to_datetime(_arg(args, 0)).month


def _day(args: list[Any], ctx: dict[str, Any]) -> int:
    return to_datetime(_arg(args, 0)).day


def _date_diff(args: list[Any], ctx: dict[str, Any]) -> int:
    """Whole days between two dates, rounded up, always non-negative."""
    first = to_epoch_millis(to_datetime(_arg(args, 0)))
    second = to_epoch_millis(to_datetime(_arg(args, 1)))
    return math.ceil(abs(first - second) / _MS_PER_DAY)


def _shift(value: Any, delta: timedelta | relativedelta) -> date | datetime:
    # Keep plain dates as dates
    if isinstance(value, date) and not isinstance(value, datetime):
        return value + delta
    return to_datetime(value) + delta


def _add_days(args: list[Any], ctx: dict[str, Any]) -> date | datetime:
    return _shift(_arg(args, 0), timedelta(days=_int_arg(args, 1)))


def _add_months(args: list[Any], ctx: dict[str, Any]) -> date | datetime:
    return _shift(_arg(args, 0), relativedelta(months=_int_arg(args, 1)))


# =============================================================================
# Conditional, identity and type checks
# =============================================================================


def _if(args: list[Any], ctx: dict[str, Any]) -> Any:
    return _arg(args, 1) if is_truthy(_arg(args, 0)) else _arg(args, 2)


def _auto_number(args: list[Any], ctx: dict[str, Any]) -> Any:
    generator = ctx.get(AUTO_NUMBER_KEY)
    if callable(generator):
        return generator()
    return random.randint(1000, 10999)


def _uuid(args: list[Any], ctx: dict[str, Any]) -> str:
    generator = ctx.get(UUID_KEY)
    if callable(generator):
        return str(generator())
    return str(uuid.uuid4())


def _is_null(args: list[Any], ctx: dict[str, Any]) -> bool:
    return _arg(args, 0) is None


def _is_empty(args: list[Any], ctx: dict[str, Any]) -> bool:
    value = _arg(args, 0)
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list | tuple | dict):
        return len(value) == 0
    return False


def _is_number(args: list[Any], ctx: dict[str, Any]) -> bool:
    value = _arg(args, 0)
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str) and not value.strip():
        return False
    number = to_number(value)
    return not is_nan(number)


def _is_date(args: list[Any], ctx: dict[str, Any]) -> bool:
    value = _arg(args, 0)
    if value is None or isinstance(value, bool):
        return False
    return is_date_like(value)


# =============================================================================
# Array functions
# =============================================================================


def _array_length(args: list[Any], ctx: dict[str, Any]) -> int:
    value = _arg(args, 0)
    return len(value) if isinstance(value, list | tuple) else 0


def _array_contains(args: list[Any], ctx: dict[str, Any]) -> bool:
    value = _arg(args, 0)
    if not isinstance(value, list | tuple):
        return False
    needle = _arg(args, 1)
    return any(strict_equals(item, needle) for item in value)


def _array_join(args: list[Any], ctx: dict[str, Any]) -> str:
    value = _arg(args, 0)
    if not isinstance(value, list | tuple):
        return ""
    separator = to_string(_arg(args, 1, ","))
    return separator.join(to_string(item) for item in value)


FUNCTIONS: dict[str, ExpressionFunction] = {
    # String
    "CONCAT": _concat,
    "TRIM": _trim,
    "LENGTH": _length,
    "UPPER": _upper,
    "LOWER": _lower,
    "CONTAINS": _contains,
    "MATCHES": _matches,
    "SUBSTRING": _substring,
    # Numeric
    "SUM": _sum,
    "AVG": _avg,
    "MIN": _min,
    "MAX": _max,
    "ROUND": _round,
    "FLOOR": _unary_math(math.floor),
    "CEIL": _unary_math(math.ceil),
    "ABS": _unary_math(abs),
    # Date
    "YEAR": _year,
    "MONTH": _month,
    "DAY": _day,
    "DATE_DIFF": _date_diff,
    "ADD_DAYS": _add_days,
    "ADD_MONTHS": _add_months,
    # Conditional
    "IF": _if,
    # Identity / system
    "AUTO_NUMBER": _auto_number,
    "UUID": _uuid,
    "IS_NULL": _is_null,
    "IS_EMPTY": _is_empty,
    "IS_NUMBER": _is_number,
    "IS_DATE": _is_date,
    # Array
    "ARRAY_LENGTH": _array_length,
    "ARRAY_CONTAINS": _array_contains,
    "ARRAY_JOIN": _array_join,
}
