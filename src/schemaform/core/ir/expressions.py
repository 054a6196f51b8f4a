"""
Expression tree types for schema rules.

Rule conditions, formulas and default values arrive from the schema source
as pre-parsed expression trees in a PascalCase wire format:

    {"Type": "BinaryExpression", "Operator": ">=",
     "Arguments": [{"Type": "Identifier", "Name": "Age", "Source": "Input"},
                   {"Type": "Literal", "Value": 18}]}

This module defines the typed, immutable AST those trees are parsed into,
plus the conversion back to the wire format. The node set is closed:
    - Literal, Identifier, SystemIdentifier
    - MemberExpression
    - BinaryExpression, LogicalExpression
    - CallExpression, AssignmentExpression
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import SchemaError

# ---------------------------------------------------------------------------
# Operators and system identifiers
# ---------------------------------------------------------------------------


class BinaryOperator(StrEnum):
    """Binary operators understood by the evaluator."""

    # Equality
    EQ = "=="
    NE = "!="
    STRICT_EQ = "==="
    STRICT_NE = "!=="
    # Ordering
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    # Arithmetic
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"


class LogicalOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class SystemName(StrEnum):
    """Implicit values available to every expression."""

    NOW = "NOW"
    TODAY = "TODAY"
    CURRENT_USER = "CURRENT_USER"
    CURRENT_USER_ID = "CURRENT_USER_ID"


SYSTEM_NAMES = frozenset(name.value for name in SystemName)

# Identifiers starting with this sigil are engine-reserved, never field reads.
RESERVED_SIGIL = "$"


# ---------------------------------------------------------------------------
# AST node types
# ---------------------------------------------------------------------------


class Literal(BaseModel):
    """A literal value: number, string, bool or null."""

    value: Any = Field(default=None, description="The literal value")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, str):
            return f"'{self.value}'"
        return str(self.value)


class Identifier(BaseModel):
    """
    A read of a form field, optionally followed by a property path.

    Examples:
        - Identifier(name="Age") -> Age
        - Identifier(name="Customer", property_path=("Email",)) -> Customer.Email
    """

    name: str = Field(description="Field id")
    source: str | None = Field(default=None, description="Value source, e.g. 'Input'")
    property_path: tuple[str, ...] = Field(default=(), description="Nested property names")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return ".".join((self.name, *self.property_path))


class SystemIdentifier(BaseModel):
    """A read of an implicit system value (NOW, TODAY, CURRENT_USER, ...)."""

    name: str = Field(description="System value name")
    property_path: tuple[str, ...] = Field(default=(), description="Nested property names")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return ".".join((self.name, *self.property_path))


class MemberExpression(BaseModel):
    """
    Property access off an evaluated object.

    ``arguments[0]`` is the object; each further argument names one
    property step (an Identifier's name or a Literal's value).
    """

    arguments: tuple[ExpressionNode, ...] = Field(min_length=1, description="Object then property steps")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        obj, *steps = self.arguments
        rendered = [str(obj)]
        for step in steps:
            rendered.append(step.name if isinstance(step, Identifier) else str(getattr(step, "value", step)))
        return ".".join(rendered)


class BinaryExpression(BaseModel):
    """A binary operation: left op right."""

    operator: str = Field(description="Operator symbol")
    arguments: tuple[ExpressionNode, ...] = Field(
        min_length=2, max_length=2, description="Left and right operands"
    )

    model_config = ConfigDict(frozen=True)

    @property
    def left(self) -> ExpressionNode:
        return self.arguments[0]

    @property
    def right(self) -> ExpressionNode:
        return self.arguments[1]

    def __str__(self) -> str:
        return f"({self.left} {self.operator} {self.right})"


class LogicalExpression(BaseModel):
    """AND / OR over two or more operands."""

    operator: str = Field(description="AND or OR")
    arguments: tuple[ExpressionNode, ...] = Field(min_length=2, description="Operands")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        joined = f" {self.operator} ".join(str(arg) for arg in self.arguments)
        return f"({joined})"


class CallExpression(BaseModel):
    """A call into the fixed function library: CONCAT(FirstName, ' ', LastName)."""

    callee: str = Field(description="Function name")
    arguments: tuple[ExpressionNode, ...] = Field(default=(), description="Arguments")

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        args_str = ", ".join(str(arg) for arg in self.arguments)
        return f"{self.callee}({args_str})"


class AssignmentExpression(BaseModel):
    """Wraps the single value expression of a formula or default."""

    arguments: tuple[ExpressionNode, ...] = Field(min_length=1, max_length=1, description="Value")

    model_config = ConfigDict(frozen=True)

    @property
    def value(self) -> ExpressionNode:
        return self.arguments[0]

    def __str__(self) -> str:
        return str(self.value)


# ---------------------------------------------------------------------------
# Union type
# ---------------------------------------------------------------------------

ExpressionNode = (
    Literal
    | Identifier
    | SystemIdentifier
    | MemberExpression
    | BinaryExpression
    | LogicalExpression
    | CallExpression
    | AssignmentExpression
)

# Rebuild models that reference ExpressionNode (forward ref)
MemberExpression.model_rebuild()
BinaryExpression.model_rebuild()
LogicalExpression.model_rebuild()
CallExpression.model_rebuild()
AssignmentExpression.model_rebuild()


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _flatten_property(prop: dict[str, Any] | None) -> tuple[str, ...]:
    path: list[str] = []
    while prop:
        name = prop.get("Name")
        if not name:
            raise SchemaError("Property step without a Name")
        path.append(name)
        prop = prop.get("Property")
    return tuple(path)


def _nest_property(path: tuple[str, ...]) -> dict[str, Any] | None:
    nested: dict[str, Any] | None = None
    for name in reversed(path):
        nested = {"Name": name, **({"Property": nested} if nested else {})}
    return nested


def parse_expression_tree(data: dict[str, Any]) -> ExpressionNode:
    """Parse a wire-format expression tree into typed nodes.

    Raises:
        SchemaError: On unknown node types or arity violations.
    """
    if not isinstance(data, dict):
        raise SchemaError(f"Expression node must be an object, got {type(data).__name__}")

    node_type = data.get("Type")
    args = tuple(parse_expression_tree(arg) for arg in data.get("Arguments") or ())

    try:
        if node_type == "Literal":
            return Literal(value=data.get("Value"))
        if node_type == "Identifier":
            return Identifier(
                name=_require(data, "Name", node_type),
                source=data.get("Source"),
                property_path=_flatten_property(data.get("Property")),
            )
        if node_type == "SystemIdentifier":
            return SystemIdentifier(
                name=_require(data, "Name", node_type),
                property_path=_flatten_property(data.get("Property")),
            )
        if node_type == "MemberExpression":
            return MemberExpression(arguments=args)
        if node_type == "BinaryExpression":
            return BinaryExpression(operator=_require(data, "Operator", node_type), arguments=args)
        if node_type == "LogicalExpression":
            return LogicalExpression(operator=_require(data, "Operator", node_type), arguments=args)
        if node_type == "CallExpression":
            return CallExpression(callee=_require(data, "Callee", node_type), arguments=args)
        if node_type == "AssignmentExpression":
            return AssignmentExpression(arguments=args)
    except ValidationError as e:
        raise SchemaError(f"Malformed {node_type}: {e.errors()[0]['msg']}") from e

    raise SchemaError(f"Unknown expression type: {node_type}")


def _require(data: dict[str, Any], key: str, node_type: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise SchemaError(f"{node_type} requires {key}")
    return value


def to_wire(node: ExpressionNode) -> dict[str, Any]:
    """Convert a typed node back to the PascalCase wire format."""
    if isinstance(node, Literal):
        return {"Type": "Literal", "Value": node.value}

    if isinstance(node, Identifier | SystemIdentifier):
        wire: dict[str, Any] = {"Type": type(node).__name__, "Name": node.name}
        if isinstance(node, Identifier) and node.source is not None:
            wire["Source"] = node.source
        if node.property_path:
            wire["Property"] = _nest_property(node.property_path)
        return wire

    wire = {"Type": type(node).__name__}
    if isinstance(node, BinaryExpression | LogicalExpression):
        wire["Operator"] = node.operator
    if isinstance(node, CallExpression):
        wire["Callee"] = node.callee
    wire["Arguments"] = [to_wire(arg) for arg in node.arguments]
    return wire


def expression_key(node: ExpressionNode) -> str:
    """Stable structural key for a tree (identical trees share a key)."""
    return json.dumps(to_wire(node), sort_keys=True, default=str)
