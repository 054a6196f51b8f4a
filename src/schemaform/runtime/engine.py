"""
Rule engine session: local validation, computed previews and defaults.

One session per form. It owns the evaluation cache, the classified rules
and the field -> rule mapping, so nothing is shared between forms.

Failure policy:
    - validation rules fail closed: an evaluation error reports the rule
      as failed with its configured message
    - computed and default values fail open: the prior value is kept and a
      warning is logged and passed to ``on_warning``
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from ..core.errors import ExpressionEvaluationError, ValidationFailure
from ..core.expression_lang.cache import EvaluationCache
from ..core.expression_lang.evaluator import system_values
from ..core.ir.expressions import ExpressionNode
from ..core.ir.schema import ExecutionStrategy, FieldType, Rule, Schema, generate_label
from ..core.rules.classifier import (
    ClassifiedRules,
    FieldRules,
    classify_rules,
    create_field_rule_mapping,
    get_rules_for_field,
)
from ..core.rules.graph import dependents_of

logger = logging.getLogger(__name__)

WarningCallback = Callable[[str], None]

TYPE_DEFAULTS: dict[str, Callable[[], Any]] = {
    FieldType.BOOLEAN: lambda: False,
    FieldType.NUMBER: lambda: 0,
    FieldType.STRING: lambda: "",
    FieldType.ARRAY: list,
    FieldType.OBJECT: dict,
}

DEFAULT_RULE_MESSAGE = "Invalid value"

# Raised by the evaluator, or by cache keying on values Python cannot render
EVALUATION_ERRORS = (ExpressionEvaluationError, ArithmeticError, TypeError, ValueError)


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list | tuple | dict):
        return len(value) == 0
    return False


class RuleEngineSession:
    """Evaluates a normalized schema's local rules for one form session."""

    def __init__(
        self,
        schema: Schema,
        *,
        cache: EvaluationCache | None = None,
        on_warning: WarningCallback | None = None,
        user: dict[str, Any] | None = None,
    ):
        self.schema = schema
        self.cache = cache or EvaluationCache()
        self.on_warning = on_warning
        self.user = user
        self.classified: ClassifiedRules = classify_rules(schema)
        self.field_rules: dict[str, FieldRules] = create_field_rule_mapping(schema, self.classified)
        self._cross_field_rules = [
            rule
            for rule in self.classified.validation.values()
            if len(self.cache.dependencies(rule.expression_tree)) > 1
        ]

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def context(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Evaluation context: system values overlaid with field values."""
        ctx = system_values(self.user)
        # Pin the clock only when a value already carries it
        for name in ("NOW", "TODAY"):
            if name not in values:
                ctx.pop(name)
        ctx.update(values)
        return ctx

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.on_warning is not None:
            self.on_warning(message)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validation_rules(self, field_id: str) -> list[Rule]:
        return get_rules_for_field(field_id, self.field_rules, self.classified, ExecutionStrategy.CLIENT)

    def validate_field(
        self,
        field_id: str,
        values: Mapping[str, Any],
        last_values: Mapping[str, Any] | None = None,
    ) -> ValidationFailure | None:
        """First failing check for ``field_id``: required, then rules in order."""
        field_def = self.schema.fields.get(field_id)
        if field_def is None:
            return None

        if field_def.required and not field_def.is_computed and is_empty_value(values.get(field_id)):
            return ValidationFailure(
                rule_id="required",
                message=f"{field_def.name or generate_label(field_id)} is required",
                field_id=field_id,
                fields=(field_id,),
            )

        ctx = self.context(values)
        last_ctx = self.context(last_values) if last_values is not None else None
        for rule in self.validation_rules(field_id):
            failure = self._check_rule(rule, ctx, last_ctx, field_id)
            if failure is not None:
                return failure
        return None

    def cross_field_failures(
        self,
        values: Mapping[str, Any],
        last_values: Mapping[str, Any] | None = None,
    ) -> list[ValidationFailure]:
        """Failures of validation rules that read more than one field."""
        ctx = self.context(values)
        last_ctx = self.context(last_values) if last_values is not None else None
        failures = []
        for rule in self._cross_field_rules:
            failure = self._check_rule(rule, ctx, last_ctx, None)
            if failure is not None:
                failures.append(failure)
        return failures

    def _check_rule(
        self,
        rule: Rule,
        ctx: dict[str, Any],
        last_ctx: dict[str, Any] | None,
        field_id: str | None,
    ) -> ValidationFailure | None:
        fields = tuple(sorted(self.cache.dependencies(rule.expression_tree)))
        try:
            passed = bool(self.cache.evaluate(rule.expression_tree, ctx, last_ctx))
        except EVALUATION_ERRORS as e:
            logger.warning("Validation rule %s failed to evaluate: %s", rule.id, _describe(e))
            passed = False
        if passed:
            return None
        return ValidationFailure(
            rule_id=rule.id,
            message=rule.message or DEFAULT_RULE_MESSAGE,
            field_id=field_id,
            fields=fields,
        )

    # ------------------------------------------------------------------
    # Computed and default values
    # ------------------------------------------------------------------

    def affected_computed_fields(self, field_id: str) -> list[str]:
        return dependents_of(self.schema, field_id)

    def compute_value(
        self,
        field_id: str,
        values: Mapping[str, Any],
        last_values: Mapping[str, Any] | None = None,
    ) -> Any:
        """Local preview of a formula field; keeps the prior value on error."""
        field_def = self.schema.fields[field_id]
        prior = values.get(field_id)
        if field_def.formula is None:
            return prior
        last_ctx = self.context(last_values) if last_values is not None else None
        return self._evaluate_open(
            field_def.formula.expression_tree, self.context(values), last_ctx, prior, f"computed field {field_id}"
        )

    def compute_all(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Preview every formula field, feeding results forward in schema order."""
        working = dict(values)
        computed: dict[str, Any] = {}
        for field_id, field_def in self.schema.fields.items():
            if field_def.formula is None:
                continue
            computed[field_id] = self.compute_value(field_id, working)
            working[field_id] = computed[field_id]
        return computed

    def default_values(self, values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Initial values for a new record: default expressions, else type defaults."""
        ctx_values = dict(values or {})
        defaults: dict[str, Any] = {}
        for field_id, field_def in self.schema.fields.items():
            if field_def.default_value is not None:
                defaults[field_id] = self._evaluate_open(
                    field_def.default_value.expression_tree,
                    self.context({**ctx_values, **defaults}),
                    None,
                    None,
                    f"default value of {field_id}",
                )
            elif field_def.type in TYPE_DEFAULTS:
                defaults[field_id] = TYPE_DEFAULTS[field_def.type]()
            else:
                defaults[field_id] = None
        return defaults

    def _evaluate_open(
        self,
        node: ExpressionNode,
        ctx: dict[str, Any],
        last_ctx: dict[str, Any] | None,
        prior: Any,
        what: str,
    ) -> Any:
        try:
            return self.cache.evaluate(node, ctx, last_ctx)
        except EVALUATION_ERRORS as e:
            self._warn(f"Could not evaluate {what}: {_describe(e)}")
            return prior

    def reset(self) -> None:
        """Invalidate cached results (schema refetched)."""
        self.cache.clear()


def _describe(error: Exception) -> str:
    if isinstance(error, ExpressionEvaluationError):
        return error.message
    return f"{type(error).__name__}: {error}"
