"""
Value coercion for the expression language.

Schema expressions are authored against loosely typed form values: numbers
typed into text inputs arrive as strings, empty inputs as ``""`` or ``None``.
These helpers define the numeric cast, truthiness and equality used by the
evaluator and the function library.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, time
from decimal import Decimal
from typing import Any

from dateutil import parser as date_parser

from ..errors import ExpressionEvaluationError

NAN = float("nan")


def to_number(value: Any) -> float | int:
    """Numeric cast. Unparseable input yields NaN rather than raising."""
    if value is None:
        return NAN
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime | date):
        return to_epoch_millis(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return NAN
    if isinstance(value, list | tuple):
        if not value:
            return 0
        if len(value) == 1:
            return to_number(value[0])
    return NAN


def normalize_number(value: Any) -> Any:
    """Collapse integral floats to int so ``2 * 3.0`` reads as ``6``."""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


def is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def is_truthy(value: Any) -> bool:
    """Falsy: None, False, 0, NaN, empty string. Empty collections are truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, int | float):
        return value != 0 and not is_nan(value)
    if isinstance(value, str):
        return value != ""
    return True


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return str(normalize_number(value))
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, list | tuple):
        return ",".join(to_string(item) for item in value)
    return str(value)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without coercion: types must agree (int and float are both numbers)."""
    if is_nan(left) or is_nan(right):
        return False
    left_num = isinstance(left, int | float) and not isinstance(left, bool)
    right_num = isinstance(right, int | float) and not isinstance(right, bool)
    if left_num and right_num:
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    """Equality with coercion: ``"18" == 18``, ``True == 1``, ``None == None``."""
    if left is None or right is None:
        return left is None and right is None
    if strict_equals(left, right):
        return True
    scalar = (int, float, str, bool)
    if isinstance(left, scalar) and isinstance(right, scalar):
        if isinstance(left, str) and isinstance(right, str):
            return False
        return to_number(left) == to_number(right) and not is_nan(to_number(left))
    if isinstance(left, datetime | date) or isinstance(right, datetime | date):
        try:
            return to_epoch_millis(to_datetime(left)) == to_epoch_millis(to_datetime(right))
        except ExpressionEvaluationError:
            return False
    return False


# =============================================================================
# Dates
# =============================================================================


def to_epoch_millis(value: date | datetime) -> int:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def to_datetime(value: Any) -> datetime:
    """Coerce a date-like value (datetime, date, ISO text, epoch ms) to a datetime.

    Raises:
        ExpressionEvaluationError: If the value is not date-like.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, str) and value.strip():
        try:
            return date_parser.isoparse(value.strip())
        except ValueError:
            pass
        try:
            return date_parser.parse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ExpressionEvaluationError(f"Invalid date: {value!r}") from e
    raise ExpressionEvaluationError(f"Invalid date: {value!r}")


def is_date_like(value: Any) -> bool:
    try:
        to_datetime(value)
    except ExpressionEvaluationError:
        return False
    return True
