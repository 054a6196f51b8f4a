"""
schemaform - schema-driven form engine.

Turns a declarative record schema (fields, expression-tree rules, role
permissions) into live form behaviour and keeps a local draft in sync with
a remote record authority.
"""

from ._version import get_version
from .core.errors import (
    ExpressionEvaluationError,
    FormEngineError,
    RecordLoadError,
    SchemaError,
    SubmissionError,
    SyncError,
)
from .core.expression_lang.evaluator import evaluate
from .core.rules.normalizer import normalize

__version__ = get_version()

__all__ = [
    "ExpressionEvaluationError",
    "FormEngineError",
    "RecordLoadError",
    "SchemaError",
    "SubmissionError",
    "SyncError",
    "__version__",
    "evaluate",
    "normalize",
]
