"""
Error types for schema loading, expression evaluation and draft synchronisation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class FormEngineError(Exception):
    """Base exception for all schemaform errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context if available."""
        if self.context:
            details = ", ".join(f"{key}={value!r}" for key, value in sorted(self.context.items()))
            return f"{self.message} ({details})"
        return self.message


class SchemaError(FormEngineError):
    """
    Raised when a schema is missing or malformed.

    Examples:
    - Schema fetch failed
    - Expression tree with an unknown node type
    - Binary expression without exactly two operands

    Fatal to the form; surfaced as a load error.
    """

    pass


class RecordLoadError(FormEngineError):
    """Raised when the record for an update-mode form cannot be fetched."""

    retryable = True


class ExpressionEvaluationError(FormEngineError):
    """Error during expression evaluation."""

    pass


class UnsupportedOperator(ExpressionEvaluationError):
    """An expression uses an operator outside the fixed operator set."""

    def __init__(self, operator: str):
        self.operator = operator
        super().__init__(f"Unsupported operator: {operator}", {"operator": operator})


class UnknownFunction(ExpressionEvaluationError):
    """A call expression names a function outside the fixed library."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown function: {name}", {"function": name})


class SyncError(FormEngineError):
    """A draft-create or draft-sync call failed. Editing continues."""

    pass


class SubmissionError(FormEngineError):
    """The final commit call failed. The form remains editable."""

    pass


class FieldNotEditableError(FormEngineError):
    """A write was attempted on a computed, read-only or hidden field."""

    def __init__(self, field_id: str, reason: str = "not editable"):
        self.field_id = field_id
        super().__init__(f"Field '{field_id}' is {reason}", {"field": field_id})


@dataclass(frozen=True)
class ValidationFailure:
    """
    A per-field validation result.

    Not an exception: failures are recovered locally and shown next to the
    field without blocking other fields.
    """

    rule_id: str
    message: str
    field_id: str | None = None
    fields: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "message": self.message,
            "field_id": self.field_id,
            "fields": list(self.fields),
        }
