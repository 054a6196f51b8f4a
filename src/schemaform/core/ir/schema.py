"""
Schema types: fields, rules, role permissions.

A Schema is the normalized form of a BDO (business data object) document.
After normalization every rule lives in the central registry and fields
reference rules by id only.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .expressions import ExpressionNode, to_wire


class RuleKind(StrEnum):
    VALIDATION = "Validation"
    COMPUTATION = "Computation"
    BUSINESS_LOGIC = "BusinessLogic"


class ExecutionStrategy(StrEnum):
    """Where a rule kind runs."""

    CLIENT = "client"
    SERVER = "server"


class FieldType(StrEnum):
    """Field types with known local behaviour. Other type names pass through."""

    STRING = "String"
    TEXT = "Text"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    DATE = "Date"
    DATETIME = "DateTime"
    REFERENCE = "Reference"
    ARRAY = "Array"
    OBJECT = "Object"


# =============================================================================
# Rules
# =============================================================================


class Rule(BaseModel):
    """A rule in the central registry.

    ``target_field`` links a computation rule to the field it writes. Rules
    without it are linked by name inference (legacy schemas only).
    """

    id: str = Field(description="Registry key")
    kind: RuleKind = Field(description="Validation, Computation or BusinessLogic")
    expression_tree: ExpressionNode = Field(description="Parsed expression")
    expression: str | None = Field(default=None, description="Source text of the expression")
    message: str | None = Field(default=None, description="Message shown on validation failure")
    name: str | None = None
    description: str | None = None
    target_field: str | None = Field(default=None, description="Field written by a computation rule")

    model_config = ConfigDict(frozen=True)

    @property
    def source_text(self) -> str:
        """Expression text, rendered from the tree when the schema omits it."""
        return self.expression if self.expression is not None else str(self.expression_tree)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"Id": self.id, "ExpressionTree": to_wire(self.expression_tree)}
        optional = {
            "Expression": self.expression,
            "Message": self.message,
            "Name": self.name,
            "Description": self.description,
            "TargetField": self.target_field,
        }
        wire.update({key: value for key, value in optional.items() if value is not None})
        return wire


class RuleRegistry(BaseModel):
    """Rules partitioned by kind, each keyed by rule id."""

    validation: dict[str, Rule] = Field(default_factory=dict)
    computation: dict[str, Rule] = Field(default_factory=dict)
    business_logic: dict[str, Rule] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def by_kind(self, kind: RuleKind) -> dict[str, Rule]:
        if kind == RuleKind.VALIDATION:
            return self.validation
        if kind == RuleKind.COMPUTATION:
            return self.computation
        return self.business_logic

    def get(self, rule_id: str) -> Rule | None:
        for bucket in (self.validation, self.computation, self.business_logic):
            if rule_id in bucket:
                return bucket[rule_id]
        return None

    def all_rules(self) -> list[Rule]:
        return [*self.validation.values(), *self.computation.values(), *self.business_logic.values()]


# =============================================================================
# Fields
# =============================================================================


class FieldExpression(BaseModel):
    """A formula or default value: source text plus parsed tree."""

    expression_tree: ExpressionNode
    expression: str | None = None
    id: str | None = None
    description: str | None = None

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"ExpressionTree": to_wire(self.expression_tree)}
        for key, value in (("Expression", self.expression), ("Id", self.id), ("Description", self.description)):
            if value is not None:
                wire[key] = value
        return wire


class OptionItem(BaseModel):
    value: Any
    label: str

    model_config = ConfigDict(frozen=True)


class ReferenceSource(BaseModel):
    """Options loaded from another business object."""

    business_object: str
    fields: tuple[str, ...] = ("_id",)
    filters: Any = None
    sort: Any = None

    model_config = ConfigDict(frozen=True)


class ValueSource(BaseModel):
    """Where a field's selectable values come from (static list or reference)."""

    mode: str = Field(default="Static", description="Static or Dynamic")
    items: tuple[OptionItem, ...] = ()
    reference: ReferenceSource | None = None

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"Mode": self.mode}
        if self.items:
            wire["Items"] = [{"Value": item.value, "Label": item.label} for item in self.items]
        if self.reference is not None:
            wire["Reference"] = {
                "BusinessObject": self.reference.business_object,
                "Fields": list(self.reference.fields),
            }
            if self.reference.filters is not None:
                wire["Reference"]["Filters"] = self.reference.filters
            if self.reference.sort is not None:
                wire["Reference"]["Sort"] = self.reference.sort
        return wire


class FieldDefinition(BaseModel):
    """
    A single form field.

    Invariant: a field with ``computed`` set or a formula never accepts
    direct user edits.
    """

    id: str = Field(description="Field id, the key used in records")
    name: str | None = Field(default=None, description="Display name")
    type: str = Field(default=FieldType.STRING, description="Field type name")
    required: bool = False
    unique: bool = False
    default_value: FieldExpression | None = None
    formula: FieldExpression | None = None
    computed: bool = False
    validation_rule_ids: tuple[str, ...] = Field(default=(), description="Ids into the validation registry")
    value_source: ValueSource | None = None
    description: str | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_computed(self) -> bool:
        return self.computed or self.formula is not None

    @property
    def label(self) -> str:
        return self.name or generate_label(self.id)

    @property
    def is_system(self) -> bool:
        """Underscore-prefixed bookkeeping fields other than ``_id``."""
        return self.id.startswith("_") and self.id != "_id"

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"Id": self.id, "Type": self.type}
        if self.name is not None:
            wire["Name"] = self.name
        if self.required:
            wire["Required"] = True
        if self.unique:
            wire["Unique"] = True
        if self.computed:
            wire["Computed"] = True
        if self.default_value is not None:
            wire["DefaultValue"] = self.default_value.to_wire()
        if self.formula is not None:
            wire["Formula"] = self.formula.to_wire()
        if self.validation_rule_ids:
            wire["Validation"] = list(self.validation_rule_ids)
        if self.value_source is not None:
            wire["Values"] = self.value_source.to_wire()
        if self.description is not None:
            wire["Description"] = self.description
        return wire


def generate_label(field_id: str) -> str:
    """``unitPrice`` -> ``Unit Price``; ``unit_price`` -> ``Unit price``."""
    spaced = "".join(f" {ch}" if ch.isupper() else ch for ch in field_id)
    spaced = spaced.replace("_", " ").strip()
    return spaced[:1].upper() + spaced[1:]


# =============================================================================
# Permissions and schema
# =============================================================================


class RolePermission(BaseModel):
    """Field lists for one role; ``"*"`` matches every field."""

    editable: tuple[str, ...] = ()
    read_only: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class FieldPermission(BaseModel):
    """Derived access flags for one field under one role. Never persisted."""

    editable: bool = True
    readable: bool = True
    hidden: bool = False

    model_config = ConfigDict(frozen=True)


class Schema(BaseModel):
    """A normalized record schema."""

    id: str
    name: str | None = None
    kind: str = "BusinessObject"
    description: str | None = None
    fields: dict[str, FieldDefinition] = Field(default_factory=dict)
    rules: RuleRegistry = Field(default_factory=RuleRegistry)
    role_permissions: dict[str, RolePermission] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def computed_field_ids(self) -> list[str]:
        return [field_id for field_id, field in self.fields.items() if field.is_computed]

    @property
    def required_field_ids(self) -> list[str]:
        return [field_id for field_id, field in self.fields.items() if field.required]

    def to_wire(self) -> dict[str, Any]:
        """Render back into the BDO document shape accepted by ``normalize``."""
        wire: dict[str, Any] = {
            "Id": self.id,
            "Kind": self.kind,
            "Fields": {field_id: field.to_wire() for field_id, field in self.fields.items()},
            "Rules": {
                "Validation": {rule_id: rule.to_wire() for rule_id, rule in self.rules.validation.items()},
                "Computation": {rule_id: rule.to_wire() for rule_id, rule in self.rules.computation.items()},
                "BusinessLogic": {
                    rule_id: rule.to_wire() for rule_id, rule in self.rules.business_logic.items()
                },
            },
            "RolePermission": {
                role: {"Editable": list(perm.editable), "ReadOnly": list(perm.read_only)}
                for role, perm in self.role_permissions.items()
            },
        }
        if self.name is not None:
            wire["Name"] = self.name
        if self.description is not None:
            wire["Description"] = self.description
        return wire
