"""
Schema normalization.

Turns a raw BDO document (or a legacy flat field map) into an immutable
``Schema`` whose rules all live in the central registry:

- inline validation rule objects are hoisted and replaced by ids
- fields whose validation asserts presence are flagged ``required``
- every formula becomes a ``RULE_COMPUTE_<FIELD>`` computation rule
- computation rules without a target field get one inferred (legacy only)

Normalization is idempotent: an already built ``Schema`` is returned as is,
and ``normalize(schema.to_wire())`` reproduces ``schema``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..errors import SchemaError
from ..ir.expressions import Literal, parse_expression_tree
from ..ir.schema import (
    FieldDefinition,
    FieldExpression,
    FieldType,
    OptionItem,
    ReferenceSource,
    RolePermission,
    Rule,
    RuleKind,
    RuleRegistry,
    Schema,
    ValueSource,
)
from .legacy import convert_legacy_schema, infer_computation_rule_targets, is_legacy_schema, is_required_rule

logger = logging.getLogger(__name__)

_RULE_SECTIONS = {
    RuleKind.VALIDATION: "Validation",
    RuleKind.COMPUTATION: "Computation",
    RuleKind.BUSINESS_LOGIC: "BusinessLogic",
}


def computation_rule_id(field_id: str) -> str:
    return f"RULE_COMPUTE_{field_id.upper()}"


def inline_rule_id(field_id: str, ordinal: int) -> str:
    return f"VAL_{field_id.upper()}_{ordinal}"


def normalize(raw: Mapping[str, Any] | Schema) -> Schema:
    """Normalize a raw schema document.

    Raises:
        SchemaError: If the document is not an object or contains malformed
            fields, rules or expression trees.
    """
    if isinstance(raw, Schema):
        return raw
    if not isinstance(raw, Mapping):
        raise SchemaError(f"Schema must be an object, got {type(raw).__name__}")

    if is_legacy_schema(raw):
        raw = convert_legacy_schema(raw)

    fields_raw = raw.get("Fields")
    if not isinstance(fields_raw, Mapping):
        raise SchemaError("Schema 'Fields' must be an object")

    schema_id = str(raw.get("Id") or raw.get("Name") or "schema")
    rules_raw = raw.get("Rules") or {}
    registry: dict[RuleKind, dict[str, Rule]] = {
        kind: _parse_rule_section(rules_raw.get(section) or {}, kind) for kind, section in _RULE_SECTIONS.items()
    }

    fields: dict[str, FieldDefinition] = {}
    for field_id, field_raw in fields_raw.items():
        if not isinstance(field_raw, Mapping):
            raise SchemaError(f"Field '{field_id}' must be an object", {"schema": schema_id})
        fields[field_id] = _normalize_field(field_id, field_raw, registry)

    computation = _link_computation_rules(registry[RuleKind.COMPUTATION], fields)

    schema = Schema(
        id=schema_id,
        name=raw.get("Name"),
        kind=raw.get("Kind") or "BusinessObject",
        description=raw.get("Description"),
        fields=fields,
        rules=RuleRegistry(
            validation=registry[RuleKind.VALIDATION],
            computation=computation,
            business_logic=registry[RuleKind.BUSINESS_LOGIC],
        ),
        role_permissions=_parse_role_permissions(raw.get("RolePermission") or {}),
    )
    logger.debug(
        "Normalized schema %s: %d fields, %d rules",
        schema.id,
        len(schema.fields),
        len(schema.rules.all_rules()),
    )
    return schema


# =============================================================================
# Rules
# =============================================================================


def _parse_rule_section(section: Mapping[str, Any], kind: RuleKind) -> dict[str, Rule]:
    if not isinstance(section, Mapping):
        raise SchemaError(f"Rules.{_RULE_SECTIONS[kind]} must be an object")
    return {rule_id: parse_rule(rule_raw, kind, default_id=rule_id) for rule_id, rule_raw in section.items()}


def parse_rule(raw: Mapping[str, Any], kind: RuleKind, default_id: str | None = None) -> Rule:
    """Parse one wire rule. Conditions may sit at top level or under ``Condition``."""
    if not isinstance(raw, Mapping):
        raise SchemaError(f"Rule '{default_id}' must be an object")

    condition = raw.get("Condition") if isinstance(raw.get("Condition"), Mapping) else {}
    tree_raw = raw.get("ExpressionTree") or condition.get("ExpressionTree")
    rule_id = raw.get("Id") or default_id
    if not rule_id:
        raise SchemaError("Rule without an Id")
    if tree_raw is None:
        raise SchemaError(f"Rule '{rule_id}' has no ExpressionTree", {"rule": rule_id})

    return Rule(
        id=rule_id,
        kind=kind,
        expression_tree=parse_expression_tree(tree_raw),
        expression=raw.get("Expression") or condition.get("Expression"),
        message=raw.get("Message") or raw.get("ErrorMessage"),
        name=raw.get("Name"),
        description=raw.get("Description"),
        target_field=raw.get("TargetField"),
    )


def _link_computation_rules(rules: dict[str, Rule], fields: dict[str, FieldDefinition]) -> dict[str, Rule]:
    unlinked = [rule for rule in rules.values() if rule.target_field is None]
    if not unlinked:
        return rules

    targets = infer_computation_rule_targets(unlinked, fields)
    linked = dict(rules)
    for rule in unlinked:
        target = targets.get(rule.id)
        if target is None:
            logger.warning("Computation rule %s matches no computed field", rule.id)
            continue
        linked[rule.id] = rule.model_copy(update={"target_field": target})
    return linked


# =============================================================================
# Fields
# =============================================================================


def _normalize_field(
    field_id: str,
    raw: Mapping[str, Any],
    registry: dict[RuleKind, dict[str, Rule]],
) -> FieldDefinition:
    validation = registry[RuleKind.VALIDATION]
    required = bool(raw.get("Required", False))
    rule_ids: list[str] = []

    for ordinal, entry in enumerate(raw.get("Validation") or (), start=1):
        if isinstance(entry, str):
            rule_id = entry
        elif isinstance(entry, Mapping):
            rule = parse_rule(entry, RuleKind.VALIDATION, default_id=inline_rule_id(field_id, ordinal))
            validation[rule.id] = rule
            rule_id = rule.id
        else:
            raise SchemaError(f"Field '{field_id}' has an invalid validation entry", {"field": field_id})

        rule_ids.append(rule_id)
        rule = validation.get(rule_id)
        if rule is not None and not required and is_required_rule(rule, field_id):
            required = True

    formula = _parse_field_expression(raw.get("Formula"), field_id, "Formula")
    if formula is not None:
        rule_id = computation_rule_id(field_id)
        registry[RuleKind.COMPUTATION][rule_id] = Rule(
            id=rule_id,
            kind=RuleKind.COMPUTATION,
            expression_tree=formula.expression_tree,
            expression=formula.expression,
            name=formula.id or f"Compute {field_id}",
            description=formula.description or f"Computes value for {field_id}",
            target_field=field_id,
        )

    return FieldDefinition(
        id=field_id,
        name=raw.get("Name"),
        type=raw.get("Type") or FieldType.STRING,
        required=required,
        unique=bool(raw.get("Unique", False)),
        default_value=_parse_field_expression(raw.get("DefaultValue"), field_id, "DefaultValue"),
        formula=formula,
        computed=bool(raw.get("Computed", False)),
        validation_rule_ids=tuple(rule_ids),
        value_source=_parse_value_source(raw.get("Values"), field_id),
        description=raw.get("Description"),
    )


def _parse_field_expression(raw: Any, field_id: str, key: str) -> FieldExpression | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        # Plain default values in legacy documents
        return FieldExpression(expression_tree=Literal(value=raw))
    tree_raw = raw.get("ExpressionTree")
    if tree_raw is None:
        if "Value" in raw:
            return FieldExpression(expression_tree=Literal(value=raw["Value"]))
        raise SchemaError(f"Field '{field_id}' {key} has no ExpressionTree", {"field": field_id})
    return FieldExpression(
        expression_tree=parse_expression_tree(tree_raw),
        expression=raw.get("Expression"),
        id=raw.get("Id"),
        description=raw.get("Description"),
    )


def _parse_value_source(raw: Any, field_id: str) -> ValueSource | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise SchemaError(f"Field '{field_id}' Values must be an object", {"field": field_id})

    reference = None
    ref_raw = raw.get("Reference")
    if isinstance(ref_raw, Mapping) and ref_raw.get("BusinessObject"):
        reference = ReferenceSource(
            business_object=ref_raw["BusinessObject"],
            fields=tuple(ref_raw.get("Fields") or ("_id",)),
            filters=ref_raw.get("Filters"),
            sort=ref_raw.get("Sort"),
        )

    items = tuple(
        OptionItem(value=item.get("Value"), label=str(item.get("Label", item.get("Value"))))
        for item in raw.get("Items") or ()
        if isinstance(item, Mapping)
    )
    return ValueSource(mode=raw.get("Mode") or "Static", items=items, reference=reference)


def _parse_role_permissions(raw: Mapping[str, Any]) -> dict[str, RolePermission]:
    permissions: dict[str, RolePermission] = {}
    for role, entry in raw.items():
        if not isinstance(entry, Mapping):
            raise SchemaError(f"RolePermission for '{role}' must be an object")
        permissions[role] = RolePermission(
            editable=tuple(entry.get("Editable") or ()),
            read_only=tuple(entry.get("ReadOnly") or ()),
        )
    return permissions
