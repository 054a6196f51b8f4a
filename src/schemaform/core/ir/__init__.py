"""
Intermediate representation types for schemas and expression trees.

All types are re-exported from this package.
"""

# Expressions
from .expressions import (
    RESERVED_SIGIL,
    SYSTEM_NAMES,
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
    expression_key,
    parse_expression_tree,
    to_wire,
)

# Schema
from .schema import (
    ExecutionStrategy,
    FieldDefinition,
    FieldExpression,
    FieldPermission,
    FieldType,
    OptionItem,
    ReferenceSource,
    RolePermission,
    Rule,
    RuleKind,
    RuleRegistry,
    Schema,
    ValueSource,
    generate_label,
)

__all__ = [
    "RESERVED_SIGIL",
    "SYSTEM_NAMES",
    "AssignmentExpression",
    "BinaryExpression",
    "BinaryOperator",
    "CallExpression",
    "ExecutionStrategy",
    "ExpressionNode",
    "FieldDefinition",
    "FieldExpression",
    "FieldPermission",
    "FieldType",
    "Identifier",
    "Literal",
    "LogicalExpression",
    "LogicalOperator",
    "MemberExpression",
    "OptionItem",
    "ReferenceSource",
    "RolePermission",
    "Rule",
    "RuleKind",
    "RuleRegistry",
    "Schema",
    "SystemIdentifier",
    "SystemName",
    "ValueSource",
    "expression_key",
    "generate_label",
    "parse_expression_tree",
    "to_wire",
]
