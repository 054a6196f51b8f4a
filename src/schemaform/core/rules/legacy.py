"""
Adapters for schemas that predate explicit rule links.

Older BDO documents do not say which field a computation rule writes, and
express "required" as a validation rule instead of a flag. The heuristics
here recover both links from names and expression text. They are applied
only while normalizing; the rest of the engine reads ``Rule.target_field``
and ``FieldDefinition.required`` directly.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from ..ir.schema import FieldDefinition, Rule

logger = logging.getLogger(__name__)

LEGACY_SCHEMA_ID = "legacy_schema"


def convert_legacy_schema(flat_fields: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap a flat ``{field: definition}`` map in a BDO document.

    Inline validation rules are kept on the fields so normalization can
    hoist them into the registry.
    """
    fields: dict[str, Any] = {}
    for field_id, definition in flat_fields.items():
        if not isinstance(definition, Mapping):
            continue
        fields[field_id] = {
            "Id": field_id,
            "Name": definition.get("Description") or field_id,
            **definition,
        }
    logger.debug("Converted legacy schema with %d fields", len(fields))
    return {
        "Id": LEGACY_SCHEMA_ID,
        "Name": "Legacy Schema",
        "Kind": "BusinessObject",
        "Description": "Converted from legacy schema format",
        "Fields": fields,
        "Rules": {"Validation": {}, "Computation": {}, "BusinessLogic": {}},
        "RolePermission": {},
    }


def is_legacy_schema(raw: Mapping[str, Any]) -> bool:
    return "Fields" not in raw


# =============================================================================
# Required detection
# =============================================================================


def is_required_rule(rule: Rule, field_id: str) -> bool:
    """Detect validation rules that only assert the field has a value.

    Matches a rule id or name containing "required", and expressions such as
    ``Field != null``, ``Field != ''`` or ``TRIM(Field) != ''`` (any case,
    with or without spaces).
    """
    if "required" in rule.id.lower() or "required" in (rule.name or "").lower():
        return True

    name = re.escape(field_id.lower())
    pattern = rf"(?:trim\(\s*{name}\s*\)|(?<![\w.]){name})(?![\w.])\s*!==?\s*(?:null|''|\"\")"
    return re.search(pattern, rule.source_text.lower()) is not None


# =============================================================================
# Computation target inference
# =============================================================================


def _squash(text: str) -> str:
    return re.sub(r"[_\-]", "", text.upper())


def infer_computation_rule_targets(
    rules: Iterable[Rule],
    fields: Mapping[str, FieldDefinition],
) -> dict[str, str]:
    """Guess the target field of each computation rule from its id or text.

    Candidates are the computed fields, longest name first, so ``LowStock``
    wins over ``Stock`` for ``RULE_CALC_LOW_STOCK``. The rule id is compared
    with case and separators removed; failing that, the rule's name and
    description are searched for the field name.
    """
    candidates = sorted(
        (field_id for field_id, field in fields.items() if field.is_computed),
        key=len,
        reverse=True,
    )
    targets: dict[str, str] = {}

    for rule in rules:
        squashed_id = _squash(rule.id)
        match = next((f for f in candidates if _squash(f) in squashed_id), None)
        if match is None:
            text = f"{rule.name or ''} {rule.description or ''}".lower()
            match = next((f for f in candidates if f.lower() in text), None)
        if match is not None:
            targets[rule.id] = match

    return targets
