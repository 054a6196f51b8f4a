"""
Async runtime: rule engine sessions, draft synchronization and the remote
record authority boundary.
"""

from .accessors import FieldAccessor, build_accessor_table
from .authority import DraftResponse, HttpRecordAuthority, RecordAuthority
from .draft_sync import DraftState, DraftSynchronizer, SyncOperation
from .engine import RuleEngineSession
from .form_session import FieldView, FormSession, SubmissionResult
from .schema_store import SchemaStore
from .supervisor import SupervisorState, SyncSupervisor

__all__ = [
    "DraftResponse",
    "DraftState",
    "DraftSynchronizer",
    "FieldAccessor",
    "FieldView",
    "FormSession",
    "HttpRecordAuthority",
    "RecordAuthority",
    "RuleEngineSession",
    "SchemaStore",
    "SubmissionResult",
    "SupervisorState",
    "SyncOperation",
    "SyncSupervisor",
    "build_accessor_table",
]
