"""
Form session: the boundary the rendering layer talks to.

A session loads the schema (and the record in update mode), derives
permissions, builds the rule engine, accessor table and draft
synchronizer, and exposes per-field views plus ``submit``.

Usage:
    async with FormSession("Product", authority, role="manager") as form:
        form.set_value("Name", "Widget")
        form.blur("Name")
        result = await form.submit()
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..core.config import EngineConfig
from ..core.errors import (
    FieldNotEditableError,
    FormEngineError,
    RecordLoadError,
    SubmissionError,
    ValidationFailure,
)
from ..core.expression_lang.cache import EvaluationCache
from ..core.ir.schema import FieldPermission, Schema
from ..core.rules.permissions import calculate_field_permissions
from .accessors import FieldAccessor, build_accessor_table
from .authority import RecordAuthority
from .draft_sync import DraftSynchronizer, SyncOperation
from .engine import RuleEngineSession
from .schema_store import SchemaStore
from .supervisor import SyncSupervisor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldView:
    """What the rendering layer needs to draw one field."""

    id: str
    label: str
    type: str
    value: Any
    error: str | None
    required: bool
    computed: bool
    editable: bool
    hidden: bool
    options: tuple[tuple[Any, str], ...] = ()
    description: str | None = None


@dataclass
class SubmissionResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    record_id: str | None = None
    errors: dict[str, str] = field(default_factory=dict)
    error: SubmissionError | None = None


class FormSession:
    """One live form over one record source."""

    def __init__(
        self,
        source: str,
        authority: RecordAuthority,
        *,
        operation: SyncOperation | str | None = None,
        record_id: str | None = None,
        interactive: bool = True,
        role: str | None = None,
        user: dict[str, Any] | None = None,
        config: EngineConfig | None = None,
        schema_store: SchemaStore | None = None,
        on_warning: Callable[[str], None] | None = None,
    ):
        self.source = source
        self.authority = authority
        self.operation = SyncOperation(operation) if operation else (
            SyncOperation.UPDATE if record_id else SyncOperation.CREATE
        )
        self.record_id = record_id
        self.interactive = interactive
        self.role = role
        self.user = user
        self.config = config or EngineConfig()
        self.schema_store = schema_store or SchemaStore(authority, ttl=self.config.schema_ttl_seconds)
        self.on_warning = on_warning

        self.schema: Schema | None = None
        self.permissions: dict[str, FieldPermission] = {}
        self.engine: RuleEngineSession | None = None
        self.sync: DraftSynchronizer | None = None
        self.accessors: dict[str, FieldAccessor] = {}
        self.errors: dict[str, ValidationFailure] = {}
        self.warnings: list[str] = []
        self._values: dict[str, Any] = {}
        self._original: dict[str, Any] = {}
        self._last_validated: dict[str, Any] | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FormSession:
        await self.load()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    async def load(self) -> None:
        """Fetch schema (and record in update mode) and build the session.

        Raises:
            SchemaError: If the schema cannot be fetched or is malformed.
            RecordLoadError: If the update-mode record cannot be fetched.
        """
        schema = await self.schema_store.get(self.source)

        record: dict[str, Any] = {}
        if self.operation == SyncOperation.UPDATE:
            if self.record_id is None:
                raise RecordLoadError("Update mode requires a record id", {"source": self.source})
            record = await self.authority.fetch_record(self.source, self.record_id)
        if self._closed:
            return

        self._build(schema)
        assert self.engine is not None and self.sync is not None

        if self.operation == SyncOperation.UPDATE:
            self._values = {field_id: record.get(field_id) for field_id in schema.fields}
        else:
            self._values = self.engine.default_values()
            self._values.update(self.engine.compute_all(self._values))
        self._original = dict(self._values)
        self.sync.reset_baseline(self._values)
        logger.info("Form session for %s loaded (%s)", self.source, self.operation)

    def _build(self, schema: Schema) -> None:
        if self.sync is not None:
            self.sync.close()
        self.schema = schema
        self.permissions = calculate_field_permissions(schema, self.role)
        cache = EvaluationCache(
            max_results=self.config.result_cache_size,
            max_dependencies=self.config.dependency_cache_size,
        )
        self.engine = RuleEngineSession(schema, cache=cache, on_warning=self._warn, user=self.user)
        self.sync = DraftSynchronizer(
            schema,
            self.authority,
            self.source,
            read_values=lambda: self._values,
            write_value=self._write_from_authority,
            permissions=self.permissions,
            operation=self.operation,
            interactive=self.interactive,
            record_id=self.record_id,
            supervisor=SyncSupervisor(self.config.debounce_seconds),
            on_warning=self._warn,
        )
        self.accessors = build_accessor_table(
            schema,
            self.permissions,
            getter=self.value,
            setter=self.set_value,
            validator=self.validate_field,
        )
        self.errors = {}
        self._last_validated = None

    async def reload_schema(self) -> None:
        """Refetch the schema, dropping every cached result."""
        self.schema_store.invalidate(self.source)
        values = dict(self._values)
        original = dict(self._original)
        baseline = dict(self.sync.state.baseline_values) if self.sync else values
        draft_id = self.sync.state.draft_id if self.sync else None
        schema = await self.schema_store.get(self.source)
        self._build(schema)
        assert self.sync is not None
        self._values = {field_id: values.get(field_id) for field_id in schema.fields}
        self._original = original
        self.sync.reset_baseline(baseline)
        self.sync.state.draft_id = draft_id

    def close(self) -> None:
        """Teardown: no writes after this, pending and in-flight syncs cancelled."""
        self._closed = True
        if self.sync is not None:
            self.sync.close()

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        if self.on_warning is not None:
            self.on_warning(message)

    def _require_loaded(self) -> tuple[Schema, RuleEngineSession, DraftSynchronizer]:
        if self.schema is None or self.engine is None or self.sync is None:
            raise FormEngineError("Form session is not loaded", {"source": self.source})
        return self.schema, self.engine, self.sync

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    @property
    def values(self) -> dict[str, Any]:
        return dict(self._values)

    @property
    def draft_id(self) -> str | None:
        return self.sync.state.draft_id if self.sync else None

    def value(self, field_id: str) -> Any:
        return self._values.get(field_id)

    def set_value(self, field_id: str, value: Any) -> None:
        """User edit of one field; recomputes dependent formula previews.

        Raises:
            FieldNotEditableError: For computed, read-only or hidden fields.
        """
        schema, engine, sync = self._require_loaded()
        if self._closed:
            return
        field_def = schema.fields.get(field_id)
        if field_def is None:
            raise FieldNotEditableError(field_id, "not in the schema")
        if field_def.is_computed:
            raise FieldNotEditableError(field_id, "computed")
        if not self.permissions.get(field_id, FieldPermission()).editable:
            raise FieldNotEditableError(field_id, "read-only")

        previous = dict(self._values)
        self._values[field_id] = value
        sync.mark_dirty(field_id)
        for target in engine.affected_computed_fields(field_id):
            self._values[target] = engine.compute_value(target, self._values, previous)

    def _write_from_authority(self, field_id: str, value: Any) -> None:
        if not self._closed:
            self._values[field_id] = value

    def blur(self, field_id: str) -> bool:
        """Field lost focus: validate it and, when valid, schedule a sync."""
        _, _, sync = self._require_loaded()
        if self._closed:
            return False
        failure = self.validate_field(field_id)
        if failure is not None:
            return False
        return sync.on_blur(field_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_field(self, field_id: str) -> ValidationFailure | None:
        _, engine, _ = self._require_loaded()
        failure = engine.validate_field(field_id, self._values, self._last_validated)
        self._last_validated = dict(self._values)
        if failure is None:
            self.errors.pop(field_id, None)
        else:
            self.errors[field_id] = failure
        return failure

    def validate_all(self) -> dict[str, ValidationFailure]:
        """Validate every visible, non-computed field."""
        schema, _, _ = self._require_loaded()
        for field_id, field_def in schema.fields.items():
            if field_def.is_computed or self.permissions.get(field_id, FieldPermission()).hidden:
                continue
            self.validate_field(field_id)
        return dict(self.errors)

    def cross_field_failures(self) -> list[ValidationFailure]:
        _, engine, _ = self._require_loaded()
        return engine.cross_field_failures(self._values)

    # ------------------------------------------------------------------
    # Rendering projection
    # ------------------------------------------------------------------

    @property
    def required_fields(self) -> list[str]:
        schema, _, _ = self._require_loaded()
        return [fid for fid in schema.required_field_ids if not self.permissions[fid].hidden]

    @property
    def computed_fields(self) -> list[str]:
        schema, _, _ = self._require_loaded()
        return [fid for fid in schema.computed_field_ids if not self.permissions[fid].hidden]

    def field_view(self, field_id: str) -> FieldView:
        schema, _, _ = self._require_loaded()
        field_def = schema.fields[field_id]
        permission = self.permissions.get(field_id, FieldPermission())
        failure = self.errors.get(field_id)
        options: tuple[tuple[Any, str], ...] = ()
        if field_def.value_source is not None:
            options = tuple((item.value, item.label) for item in field_def.value_source.items)
        return FieldView(
            id=field_id,
            label=field_def.label,
            type=str(field_def.type),
            value=self._values.get(field_id),
            error=failure.message if failure else None,
            required=field_def.required,
            computed=field_def.is_computed,
            editable=permission.editable and not field_def.is_computed,
            hidden=permission.hidden,
            options=options,
            description=field_def.description,
        )

    def field_views(self) -> list[FieldView]:
        """Views for every visible field, skipping ``_``-prefixed system fields."""
        schema, _, _ = self._require_loaded()
        return [
            self.field_view(field_id)
            for field_id, field_def in schema.fields.items()
            if not field_def.is_system and not self.permissions[field_id].hidden
        ]

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def clean_payload(self) -> dict[str, Any]:
        """Commit payload: computed fields stripped, None dropped; updates send changes only."""
        schema, _, _ = self._require_loaded()
        payload: dict[str, Any] = {}
        for field_id, field_def in schema.fields.items():
            if field_def.is_computed or not self.permissions.get(field_id, FieldPermission()).editable:
                continue
            value = self._values.get(field_id)
            if value is None:
                continue
            if self.operation == SyncOperation.UPDATE and _same(value, self._original.get(field_id)):
                continue
            payload[field_id] = value
        return payload

    async def submit(self) -> SubmissionResult:
        """Validate, flush pending syncs, then commit the cleaned payload.

        A failed commit is reported in the result; the form stays editable.
        """
        _, _, sync = self._require_loaded()
        errors = self.validate_all()
        errors.update({failure.rule_id: failure for failure in self.cross_field_failures()})
        if errors:
            return SubmissionResult(success=False, errors={key: f.message for key, f in errors.items()})

        await sync.flush()
        payload = self.clean_payload()
        try:
            data = await self.authority.commit(
                self.source,
                payload,
                operation=self.operation,
                record_id=self.record_id,
                draft_id=sync.state.draft_id,
            )
        except SubmissionError as e:
            logger.error("Submit for %s failed: %s", self.source, e.message)
            return SubmissionResult(success=False, error=e)
        except Exception as e:
            logger.exception("Submit for %s raised %s", self.source, type(e).__name__)
            return SubmissionResult(success=False, error=SubmissionError(f"{type(e).__name__}: {e}"))

        record_id = data.get("_id") or self.record_id or sync.state.draft_id
        if not self._closed:
            self._original = dict(self._values)
            sync.reset_baseline(self._values)
        return SubmissionResult(success=True, data=data, record_id=str(record_id) if record_id else None)


def _same(left: Any, right: Any) -> bool:
    return json.dumps(left, sort_keys=True, default=str) == json.dumps(right, sort_keys=True, default=str)
