"""
Rule classification and field -> rule mapping.

Rules are partitioned by kind, then linked to the fields that trigger them.
Validation rules run locally; computation and business-logic rules are
dispatched to the remote authority.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..ir.schema import ExecutionStrategy, Rule, RuleKind, Schema
from .legacy import infer_computation_rule_targets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassifiedRules:
    validation: dict[str, Rule] = field(default_factory=dict)
    computation: dict[str, Rule] = field(default_factory=dict)
    business_logic: dict[str, Rule] = field(default_factory=dict)

    def by_kind(self, kind: RuleKind) -> dict[str, Rule]:
        if kind == RuleKind.VALIDATION:
            return self.validation
        if kind == RuleKind.COMPUTATION:
            return self.computation
        return self.business_logic


@dataclass
class FieldRules:
    """Rule ids linked to one field, per kind, in schema order."""

    validation: list[str] = field(default_factory=list)
    computation: list[str] = field(default_factory=list)
    business_logic: list[str] = field(default_factory=list)

    def ids(self, kind: RuleKind) -> list[str]:
        if kind == RuleKind.VALIDATION:
            return self.validation
        if kind == RuleKind.COMPUTATION:
            return self.computation
        return self.business_logic

    def add(self, kind: RuleKind, rule_id: str) -> None:
        bucket = self.ids(kind)
        if rule_id not in bucket:
            bucket.append(rule_id)


def classify_rules(schema: Schema) -> ClassifiedRules:
    """Partition the registry by rule kind."""
    return ClassifiedRules(
        validation=dict(schema.rules.validation),
        computation=dict(schema.rules.computation),
        business_logic=dict(schema.rules.business_logic),
    )


def create_field_rule_mapping(
    schema: Schema,
    classified: ClassifiedRules | None = None,
) -> dict[str, FieldRules]:
    """Link every rule to the field(s) that own it.

    Explicit field rule ids map directly, filed under the kind the registry
    gives them. Formula fields pick up computation rules with the same
    expression. Computation rules then map to ``target_field`` or, when that
    is missing, to an inferred target. Rules with no target are left out and
    reported by ``find_unlinked_computation_rules``.
    """
    classified = classified or classify_rules(schema)
    mapping = {field_id: FieldRules() for field_id in schema.fields}

    for field_id, field_def in schema.fields.items():
        for rule_id in field_def.validation_rule_ids:
            for kind in RuleKind:
                if rule_id in classified.by_kind(kind):
                    mapping[field_id].add(kind, rule_id)
                    break

        if field_def.formula is not None:
            for rule_id, rule in classified.computation.items():
                if rule.expression_tree == field_def.formula.expression_tree:
                    mapping[field_id].add(RuleKind.COMPUTATION, rule_id)

    for rule_id, target in computation_rule_targets(schema, classified).items():
        if target in mapping:
            mapping[target].add(RuleKind.COMPUTATION, rule_id)

    return mapping


def computation_rule_targets(schema: Schema, classified: ClassifiedRules | None = None) -> dict[str, str]:
    """Target field per computation rule: explicit link first, then inference."""
    classified = classified or classify_rules(schema)
    targets = {rule_id: rule.target_field for rule_id, rule in classified.computation.items() if rule.target_field}
    pending = [rule for rule_id, rule in classified.computation.items() if rule_id not in targets]
    if pending:
        targets.update(infer_computation_rule_targets(pending, schema.fields))
    return targets


def find_unlinked_computation_rules(schema: Schema, classified: ClassifiedRules | None = None) -> list[str]:
    """Computation rules that no blur will ever trigger."""
    classified = classified or classify_rules(schema)
    mapping = create_field_rule_mapping(schema, classified)
    linked = {rule_id for rules in mapping.values() for rule_id in rules.computation}
    unlinked = sorted(rule_id for rule_id in classified.computation if rule_id not in linked)
    for rule_id in unlinked:
        logger.warning("Computation rule %s is not linked to any field", rule_id)
    return unlinked


def get_rule_execution_strategy(kind: RuleKind) -> ExecutionStrategy:
    if kind == RuleKind.VALIDATION:
        return ExecutionStrategy.CLIENT
    return ExecutionStrategy.SERVER


def get_rules_for_field(
    field_id: str,
    mapping: dict[str, FieldRules],
    classified: ClassifiedRules,
    strategy: ExecutionStrategy,
) -> list[Rule]:
    """Rules linked to ``field_id`` that run under ``strategy``."""
    field_rules = mapping.get(field_id)
    if field_rules is None:
        return []

    rules: list[Rule] = []
    for kind in RuleKind:
        if get_rule_execution_strategy(kind) != strategy:
            continue
        bucket = classified.by_kind(kind)
        rules.extend(bucket[rule_id] for rule_id in field_rules.ids(kind) if rule_id in bucket)
    return rules
