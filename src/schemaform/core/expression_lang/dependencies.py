"""
Field dependency analysis for expression trees.

``dependencies(node)`` returns the field ids an expression reads. It drives
the rule -> field dependency graph, cache validity and recomputation
triggers.
"""

from __future__ import annotations

from collections.abc import Iterable

from ..ir.expressions import (
    RESERVED_SIGIL,
    SYSTEM_NAMES,
    ExpressionNode,
    Identifier,
    Literal,
    MemberExpression,
    SystemIdentifier,
)


def dependencies(node: ExpressionNode) -> frozenset[str]:
    """Collect every field id read by ``node``.

    Reserved ``$``-prefixed names and system identifiers are excluded. In a
    member expression only the object operand is a field read; the property
    steps are names inside that value.
    """
    found: set[str] = set()
    _collect(node, found)
    return frozenset(found)


def _collect(node: ExpressionNode, found: set[str]) -> None:
    if isinstance(node, Identifier):
        if not node.name.startswith(RESERVED_SIGIL) and node.name not in SYSTEM_NAMES:
            found.add(node.name)
        return

    if isinstance(node, Literal | SystemIdentifier):
        return

    if isinstance(node, MemberExpression):
        _collect(node.arguments[0], found)
        for step in node.arguments[1:]:
            # Computed steps can still read fields
            if not isinstance(step, Identifier | Literal):
                _collect(step, found)
        return

    for arg in node.arguments:
        _collect(arg, found)


def build_dependency_graph(expressions: Iterable[tuple[str, ExpressionNode]]) -> dict[str, frozenset[str]]:
    """Map each keyed expression (usually a rule id) to the fields it reads."""
    return {key: dependencies(node) for key, node in expressions}


def system_references(node: ExpressionNode) -> frozenset[str]:
    """System identifiers (NOW, TODAY, ...) read by ``node``."""
    found: set[str] = set()
    _collect_system(node, found)
    return frozenset(found)


def _collect_system(node: ExpressionNode, found: set[str]) -> None:
    if isinstance(node, SystemIdentifier):
        found.add(node.name)
        return
    if isinstance(node, Identifier):
        # Bare NOW / TODAY written as plain identifiers
        if node.name in SYSTEM_NAMES:
            found.add(node.name)
        return
    if isinstance(node, Literal):
        return
    for arg in node.arguments:
        _collect_system(arg, found)
