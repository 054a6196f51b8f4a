"""
Expression evaluator for schema rule trees.

Evaluates expression AST nodes against a flat context (field id -> value,
plus system values). Pure evaluation: no I/O, no side effects, and no use
of Python's eval(). Unknown field names resolve to None.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any

from ..errors import ExpressionEvaluationError, UnknownFunction, UnsupportedOperator
from ..ir.expressions import (
    AssignmentExpression,
    BinaryExpression,
    BinaryOperator,
    CallExpression,
    ExpressionNode,
    Identifier,
    Literal,
    LogicalExpression,
    LogicalOperator,
    MemberExpression,
    SystemIdentifier,
    SystemName,
)
from .coercion import is_truthy, loose_equals, normalize_number, strict_equals, to_number, to_string
from .functions import FUNCTIONS


def system_values(
    user: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the implicit system values to merge into an evaluation context."""
    now = now or datetime.now()
    user_id = None
    if user:
        user_id = user.get("id", user.get("Id", user.get("EmpId")))
    return {
        SystemName.NOW.value: now,
        SystemName.TODAY.value: now.date(),
        SystemName.CURRENT_USER.value: user,
        SystemName.CURRENT_USER_ID.value: user_id,
    }


def evaluate(node: ExpressionNode, context: dict[str, Any]) -> Any:
    """Evaluate an expression tree against a context dict.

    Args:
        node: Parsed expression tree.
        context: Field id -> value, plus optional system values
            (NOW, TODAY, CURRENT_USER, CURRENT_USER_ID).

    Returns:
        The computed value.

    Raises:
        ExpressionEvaluationError: If evaluation fails. ``UnsupportedOperator``
            and ``UnknownFunction`` are subclasses.
    """
    try:
        return _interpret(node, context)
    except ExpressionEvaluationError:
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ExpressionEvaluationError(f"Evaluating {node} failed: {e}") from e


def _interpret(node: ExpressionNode, ctx: dict[str, Any]) -> Any:
    """Dispatch evaluation to the appropriate handler."""
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Identifier):
        return _walk(ctx.get(node.name), node.property_path)

    if isinstance(node, SystemIdentifier):
        return _walk(_system_value(node.name, ctx), node.property_path)

    if isinstance(node, MemberExpression):
        return _interpret_member(node, ctx)

    if isinstance(node, BinaryExpression):
        return _interpret_binary(node, ctx)

    if isinstance(node, LogicalExpression):
        return _interpret_logical(node, ctx)

    if isinstance(node, CallExpression):
        return _interpret_call(node, ctx)

    if isinstance(node, AssignmentExpression):
        return _interpret(node.value, ctx)

    raise ExpressionEvaluationError(f"Unknown expression type: {type(node).__name__}")


def _system_value(name: str, ctx: dict[str, Any]) -> Any:
    if name in ctx:
        return ctx[name]
    if name == SystemName.NOW:
        return datetime.now()
    if name == SystemName.TODAY:
        return date.today()
    if name in (SystemName.CURRENT_USER, SystemName.CURRENT_USER_ID):
        return None
    raise ExpressionEvaluationError(f"Unknown system identifier: {name}")


def _walk(value: Any, path: tuple[str, ...] | list[Any]) -> Any:
    """Follow property steps; a missing step yields None."""
    current = value
    for step in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(step)
        elif isinstance(current, list | tuple) and isinstance(step, int | str):
            try:
                current = current[int(step)]
            except (ValueError, IndexError):
                return None
        elif isinstance(step, str) and not step.startswith("_"):
            current = getattr(current, step, None)
        else:
            return None
    return current


def _interpret_member(node: MemberExpression, ctx: dict[str, Any]) -> Any:
    obj, *steps = node.arguments
    path: list[Any] = []
    for step in steps:
        if isinstance(step, Identifier):
            path.append(step.name)
        elif isinstance(step, Literal):
            path.append(step.value)
        else:
            path.append(_interpret(step, ctx))
    return _walk(_interpret(obj, ctx), path)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _interpret_binary(node: BinaryExpression, ctx: dict[str, Any]) -> Any:
    """Evaluate a binary expression."""
    try:
        op = BinaryOperator(node.operator)
    except ValueError:
        raise UnsupportedOperator(node.operator) from None

    left = _interpret(node.left, ctx)
    right = _interpret(node.right, ctx)

    if op == BinaryOperator.EQ:
        return loose_equals(left, right)
    if op == BinaryOperator.NE:
        return not loose_equals(left, right)
    if op == BinaryOperator.STRICT_EQ:
        return strict_equals(left, right)
    if op == BinaryOperator.STRICT_NE:
        return not strict_equals(left, right)

    # String concatenation when either side is text
    if op == BinaryOperator.ADD and (isinstance(left, str) or isinstance(right, str)):
        return to_string(left) + to_string(right)

    try:
        return _numeric(op, to_number(left), to_number(right))
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ExpressionEvaluationError(f"{op.value} failed: {e}") from e


def _numeric(op: BinaryOperator, lhs: float, rhs: float) -> Any:
    # Comparisons against NaN are always false
    if op == BinaryOperator.LT:
        return lhs < rhs
    if op == BinaryOperator.LE:
        return lhs <= rhs
    if op == BinaryOperator.GT:
        return lhs > rhs
    if op == BinaryOperator.GE:
        return lhs >= rhs

    if op == BinaryOperator.ADD:
        return normalize_number(lhs + rhs)
    if op == BinaryOperator.SUB:
        return normalize_number(lhs - rhs)
    if op == BinaryOperator.MUL:
        return normalize_number(lhs * rhs)
    if op == BinaryOperator.DIV:
        return normalize_number(_divide(lhs, rhs))
    return normalize_number(_modulo(lhs, rhs))


def _divide(lhs: float, rhs: float) -> float:
    if rhs == 0:
        if lhs == 0 or math.isnan(lhs):
            return math.nan
        return math.copysign(math.inf, lhs) * math.copysign(1, rhs)
    return lhs / rhs


def _modulo(lhs: float, rhs: float) -> float:
    # Sign follows the dividend
    if rhs == 0 or math.isinf(lhs) or math.isnan(lhs) or math.isnan(rhs):
        return math.nan
    return math.fmod(lhs, rhs)


def _interpret_logical(node: LogicalExpression, ctx: dict[str, Any]) -> bool:
    """AND / OR with left-to-right short-circuit."""
    if node.operator == LogicalOperator.AND:
        for arg in node.arguments:
            if not is_truthy(_interpret(arg, ctx)):
                return False
        return True
    if node.operator == LogicalOperator.OR:
        for arg in node.arguments:
            if is_truthy(_interpret(arg, ctx)):
                return True
        return False
    raise UnsupportedOperator(node.operator)


def _interpret_call(node: CallExpression, ctx: dict[str, Any]) -> Any:
    """Evaluate a function call against the fixed library."""
    func = FUNCTIONS.get(node.callee)
    if func is None:
        raise UnknownFunction(node.callee)
    args = [_interpret(arg, ctx) for arg in node.arguments]
    try:
        return func(args, ctx)
    except ExpressionEvaluationError:
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise ExpressionEvaluationError(f"{node.callee} failed: {e}") from e
