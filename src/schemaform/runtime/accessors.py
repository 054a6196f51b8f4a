"""
Typed field accessor table.

Built once per form session from the normalized schema: field id ->
``FieldAccessor(get, set, validate)``. Computed and non-editable fields get
no setter.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ..core.errors import ValidationFailure
from ..core.ir.schema import FieldPermission, Schema


@dataclass(frozen=True)
class FieldAccessor:
    field_id: str
    get: Callable[[], Any]
    set: Callable[[Any], None] | None
    validate: Callable[[], ValidationFailure | None]

    @property
    def writable(self) -> bool:
        return self.set is not None


def build_accessor_table(
    schema: Schema,
    permissions: Mapping[str, FieldPermission],
    *,
    getter: Callable[[str], Any],
    setter: Callable[[str, Any], None],
    validator: Callable[[str], ValidationFailure | None],
) -> dict[str, FieldAccessor]:
    """One accessor per visible field; setters only where edits are allowed."""
    table: dict[str, FieldAccessor] = {}
    for field_id, field_def in schema.fields.items():
        permission = permissions.get(field_id)
        if permission is not None and permission.hidden:
            continue
        writable = not field_def.is_computed and (permission is None or permission.editable)
        table[field_id] = FieldAccessor(
            field_id=field_id,
            get=_bind(getter, field_id),
            set=_bind(setter, field_id) if writable else None,
            validate=_bind(validator, field_id),
        )
    return table


def _bind(fn: Callable[..., Any], field_id: str) -> Callable[..., Any]:
    def bound(*args: Any) -> Any:
        return fn(field_id, *args)

    bound.__name__ = f"{getattr(fn, '__name__', 'accessor')}_{field_id}"
    return bound
