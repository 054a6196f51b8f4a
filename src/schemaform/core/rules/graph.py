"""
Field dependency graph and schema checks.

Builds field -> fields-read maps from formulas, validation rules and
default values, and detects circular computed fields. Cycles are reported,
never resolved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..expression_lang.dependencies import dependencies
from ..ir.schema import Schema
from .classifier import classify_rules, find_unlinked_computation_rules

logger = logging.getLogger(__name__)


def build_dependency_map(schema: Schema) -> dict[str, set[str]]:
    """Fields each field's formula, validation rules and default value read."""
    dependency_map: dict[str, set[str]] = {}
    for field_id, field_def in schema.fields.items():
        reads: set[str] = set()
        if field_def.formula is not None:
            reads |= dependencies(field_def.formula.expression_tree)
        for rule_id in field_def.validation_rule_ids:
            rule = schema.rules.validation.get(rule_id)
            if rule is not None:
                reads |= dependencies(rule.expression_tree)
        if field_def.default_value is not None:
            reads |= dependencies(field_def.default_value.expression_tree)
        dependency_map[field_id] = reads
    return dependency_map


def formula_dependencies(schema: Schema) -> dict[str, frozenset[str]]:
    """Computed field -> fields its formula reads."""
    return {
        field_id: dependencies(field_def.formula.expression_tree)
        for field_id, field_def in schema.fields.items()
        if field_def.formula is not None
    }


def dependents_of(schema: Schema, field_id: str) -> list[str]:
    """Computed fields to recompute after ``field_id`` changes, transitively, in schema order."""
    formulas = formula_dependencies(schema)
    affected: set[str] = set()
    frontier = {field_id}
    while frontier:
        changed = frontier
        frontier = set()
        for target, reads in formulas.items():
            if target not in affected and reads & changed:
                affected.add(target)
                frontier.add(target)
    return [fid for fid in schema.fields if fid in affected and fid != field_id]


def find_cycles(schema: Schema) -> list[list[str]]:
    """Circular computed-field dependencies, each as a closed path ``[a, b, a]``."""
    formulas = formula_dependencies(schema)
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()
    visited: set[str] = set()

    def visit(node: str, stack: list[str]) -> None:
        if node in stack:
            cycle = stack[stack.index(node) :] + [node]
            key = frozenset(cycle)
            if key not in seen_cycles:
                seen_cycles.add(key)
                cycles.append(cycle)
            return
        if node in visited or node not in formulas:
            return
        stack.append(node)
        for dep in sorted(formulas[node]):
            visit(dep, stack)
        stack.pop()
        visited.add(node)

    for field_id in formulas:
        visit(field_id, [])
    return cycles


@dataclass
class SchemaReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    unlinked_rules: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_schema(schema: Schema) -> SchemaReport:
    """Check a normalized schema for structural problems."""
    report = SchemaReport()

    if not schema.fields:
        report.errors.append("Schema contains no fields")

    report.cycles = find_cycles(schema)
    for cycle in report.cycles:
        report.errors.append(f"Circular dependency: {' -> '.join(cycle)}")

    for field_id, field_def in schema.fields.items():
        for rule_id in field_def.validation_rule_ids:
            if schema.rules.get(rule_id) is None:
                report.warnings.append(f"Field {field_id} references unknown rule {rule_id}")

    report.unlinked_rules = find_unlinked_computation_rules(schema, classify_rules(schema))
    for rule_id in report.unlinked_rules:
        report.warnings.append(f"Computation rule {rule_id} is not linked to any field")

    if report.errors:
        logger.warning("Schema %s failed validation: %s", schema.id, "; ".join(report.errors))
    return report
