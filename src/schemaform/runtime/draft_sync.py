"""
Draft synchronization protocol.

Keeps the local form values of one session in step with the remote
authority's draft. Two independent axes decide what a blur does:

    operation   create | update
    mode        interactive | non-interactive

- interactive create: the first qualifying blur creates the draft (once,
  however many blurs overlap it); later blurs sync against the draft id
- update, either mode: blurs sync against the record id
- non-interactive create: blurs do nothing; the record is created on submit

Each sync sends only the editable, non-computed fields that differ from
``baseline_values``. The baseline is moved to the sent values before the
call is issued, so a failed call is not resent forever. A response is
applied only while its sequence number is still the latest issued, and
never overwrites a field the user edited after the call went out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.errors import SyncError
from ..core.ir.schema import FieldPermission, Schema
from .authority import DraftResponse, RecordAuthority
from .supervisor import SyncSupervisor

logger = logging.getLogger(__name__)


class SyncOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"


@dataclass
class DraftState:
    """Synchronization bookkeeping owned by one ``DraftSynchronizer``."""

    draft_id: str | None = None
    baseline_values: dict[str, Any] = field(default_factory=dict)
    dirty_field_ids: set[str] = field(default_factory=set)
    pending_request_seq: int = 0


class DraftSynchronizer:
    """Runs the blur -> diff -> sync -> apply cycle for one form session.

    Form values are read and written through ``read_values`` and
    ``write_value`` so the synchronizer never holds its own copy.
    """

    def __init__(
        self,
        schema: Schema,
        authority: RecordAuthority,
        source: str,
        *,
        read_values: Callable[[], Mapping[str, Any]],
        write_value: Callable[[str, Any], None],
        permissions: Mapping[str, FieldPermission] | None = None,
        operation: SyncOperation = SyncOperation.CREATE,
        interactive: bool = True,
        record_id: str | None = None,
        supervisor: SyncSupervisor | None = None,
        on_warning: Callable[[str], None] | None = None,
    ):
        if operation == SyncOperation.UPDATE and record_id is None:
            raise ValueError("update mode requires a record_id")
        self.schema = schema
        self.authority = authority
        self.source = source
        self.operation = SyncOperation(operation)
        self.interactive = interactive
        self.record_id = record_id
        self.permissions = dict(permissions or {})
        self.supervisor = supervisor or SyncSupervisor()
        self.on_warning = on_warning
        self.state = DraftState()
        self.last_error: SyncError | None = None
        self.server_failures: list[dict[str, Any]] = []
        self._read_values = read_values
        self._write_value = write_value
        self._draft_task: asyncio.Task[None] | None = None
        self._applying = False
        self._alive = True

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def applying(self) -> bool:
        """True while a response is being written into the form."""
        return self._applying

    @property
    def syncs_on_blur(self) -> bool:
        return self.operation == SyncOperation.UPDATE or self.interactive

    @property
    def needs_draft(self) -> bool:
        return self.operation == SyncOperation.CREATE and self.interactive and self.state.draft_id is None

    def reset_baseline(self, values: Mapping[str, Any]) -> None:
        """Values known to match the authority (a loaded record or initial defaults)."""
        self.state.baseline_values = dict(values)
        self.state.dirty_field_ids.clear()

    def is_syncable(self, field_id: str) -> bool:
        field_def = self.schema.fields.get(field_id)
        if field_def is None or field_def.is_computed:
            return False
        permission = self.permissions.get(field_id)
        return permission is None or permission.editable

    def mark_dirty(self, field_id: str) -> None:
        """Record a user edit; ignored for writes made while applying a response."""
        if not self._applying:
            self.state.dirty_field_ids.add(field_id)

    def compute_diff(self, values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Editable, non-computed fields whose value differs from the baseline."""
        values = self._read_values() if values is None else values
        baseline = self.state.baseline_values
        return {
            field_id: value
            for field_id, value in values.items()
            if self.is_syncable(field_id) and (field_id not in baseline or baseline[field_id] != value)
        }

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_blur(self, field_id: str) -> bool:
        """Schedule a debounced sync for a qualifying blur. Returns True if scheduled."""
        if not self._alive or self._applying or not self.syncs_on_blur:
            return False
        if not self.is_syncable(field_id):
            return False
        self.supervisor.schedule(self.run)
        return True

    async def sync_now(self) -> None:
        """Bypass the debounce window."""
        await self.supervisor.fire_now(self.run)

    async def flush(self) -> None:
        """Fire any pending sync and wait for in-flight calls."""
        await self.supervisor.flush()
        if self._draft_task is not None and not self._draft_task.done():
            await asyncio.gather(self._draft_task, return_exceptions=True)

    async def run(self) -> None:
        """One sync cycle: create the draft if needed, then sync the diff."""
        if not self._alive:
            return
        if self.needs_draft:
            await self._ensure_draft()
            if self.state.draft_id is None:
                return

        diff = self.compute_diff()
        if not diff:
            return

        sequence = self._issue(diff)
        try:
            if self.operation == SyncOperation.UPDATE:
                response = await self.authority.sync_draft(self.source, diff, record_id=self.record_id)
            else:
                response = await self.authority.sync_draft(self.source, diff, draft_id=self.state.draft_id)
        except Exception as e:
            self._fail(sequence, _as_sync_error(e, f"Draft sync for {self.source}"))
            return
        self._apply(sequence, response)

    # ------------------------------------------------------------------
    # Draft creation
    # ------------------------------------------------------------------

    async def _ensure_draft(self) -> None:
        # Single-flight: overlapping runs wait on the same creation call
        if self._draft_task is None:
            self._draft_task = asyncio.get_running_loop().create_task(self._create_draft())
        await asyncio.shield(self._draft_task)

    async def _create_draft(self) -> None:
        diff = self.compute_diff()
        sequence = self._issue(diff)
        try:
            response = await self.authority.create_draft(self.source, diff)
        except Exception as e:
            # Next qualifying blur retries the creation
            self._draft_task = None
            self._fail(sequence, _as_sync_error(e, f"Draft create for {self.source}"))
            return
        if not self._alive:
            return
        if response.draft_id is None:
            self._draft_task = None
            self._fail(sequence, SyncError(f"Draft create for {self.source} returned no id"))
            return
        self.state.draft_id = response.draft_id
        logger.info("Draft %s created for %s", response.draft_id, self.source)
        self._apply(sequence, response)

    # ------------------------------------------------------------------
    # Issue / apply
    # ------------------------------------------------------------------

    def _issue(self, diff: Mapping[str, Any]) -> int:
        sequence = self.supervisor.next_sequence()
        self.state.pending_request_seq = sequence
        # Optimistic: the baseline is not rolled back if the call fails
        self.state.baseline_values.update(diff)
        self.state.dirty_field_ids.difference_update(diff)
        return sequence

    def _apply(self, sequence: int, response: DraftResponse) -> None:
        if not self._alive:
            return
        if not self.supervisor.is_current(sequence):
            logger.debug("Discarding stale sync response #%d (latest #%d)", sequence, self.supervisor.sequence)
            return

        self._applying = True
        try:
            for field_id, value in response.values.items():
                if field_id not in self.schema.fields:
                    continue
                if field_id in self.state.dirty_field_ids:
                    logger.debug("Keeping user edit of %s over sync response #%d", field_id, sequence)
                    continue
                self._write_value(field_id, value)
                self.state.baseline_values[field_id] = value
        finally:
            self._applying = False

        self.server_failures = list(response.validation_failures)
        self.last_error = None

    def _fail(self, sequence: int, error: SyncError) -> None:
        if not self._alive:
            return
        if not self.supervisor.is_current(sequence):
            logger.debug("Ignoring stale sync failure #%d (latest #%d): %s", sequence, self.supervisor.sequence, error)
            return
        self.last_error = error
        message = f"Draft sync for {self.source} failed: {error.message}"
        logger.warning(message)
        if self.on_warning is not None:
            self.on_warning(message)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop applying results and cancel pending and in-flight calls."""
        self._alive = False
        self.supervisor.cancel()
        if self._draft_task is not None and not self._draft_task.done():
            self._draft_task.cancel()


def _as_sync_error(error: Exception, action: str) -> SyncError:
    if isinstance(error, SyncError):
        return error
    logger.exception("%s raised %s", action, type(error).__name__)
    return SyncError(f"{type(error).__name__}: {error}")
