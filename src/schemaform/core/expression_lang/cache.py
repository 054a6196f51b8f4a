"""
Memoizing evaluation cache.

Wraps the evaluator with three layers:
    1. an LRU of results keyed by a structural hash of (expression, context)
    2. an LRU of per-expression analysis (field dependencies, volatility)
    3. a dependency-aware short-circuit: when the caller passes the previous
       context and none of the expression's dependencies changed, the last
       result for that expression is returned without evaluating

One cache belongs to one rule-engine session. Nothing here is module-level
state, so tests and form sessions never share entries.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from ..ir.expressions import SYSTEM_NAMES, CallExpression, ExpressionNode, Literal, expression_key
from .dependencies import dependencies, system_references
from .evaluator import evaluate

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

Evaluator = Callable[[ExpressionNode, dict[str, Any]], Any]

# Calls whose result differs on every invocation
_VOLATILE_FUNCTIONS = frozenset({"AUTO_NUMBER", "UUID"})
_MISSING = object()


class LRUCache(Generic[K, V]):
    """Bounded mapping that evicts the least recently used entry on overflow."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K, default: Any = None) -> Any:
        if key not in self._entries:
            return default
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: K, value: V) -> None:
        self._entries[key] = value
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@dataclass(frozen=True)
class ExpressionAnalysis:
    """Static facts about one expression tree."""

    key: str
    fields: frozenset[str]
    system_names: frozenset[str]
    volatile: bool


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    short_circuits: int = 0
    evaluations: int = 0
    uncacheable: int = 0


class EvaluationCache:
    """Per-session memoizing wrapper around the expression evaluator."""

    def __init__(
        self,
        evaluator: Evaluator = evaluate,
        max_results: int = 500,
        max_dependencies: int = 200,
    ):
        self._evaluator = evaluator
        self._results: LRUCache[str, Any] = LRUCache(max_results)
        self._analysis: LRUCache[str, ExpressionAnalysis] = LRUCache(max_dependencies)
        # expression key -> (dependency snapshot, result) of the latest evaluation
        self._last: LRUCache[str, tuple[tuple[Any, ...], Any]] = LRUCache(max_results)
        self.stats = CacheStats()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, node: ExpressionNode) -> ExpressionAnalysis:
        key = expression_key(node)
        cached = self._analysis.get(key)
        if cached is not None:
            return cached
        analysis = ExpressionAnalysis(
            key=key,
            fields=dependencies(node),
            system_names=system_references(node),
            volatile=_is_volatile(node),
        )
        self._analysis.put(key, analysis)
        return analysis

    def dependencies(self, node: ExpressionNode) -> frozenset[str]:
        """Cached ``dependencies(node)``."""
        return self.analyze(node).fields

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        node: ExpressionNode,
        context: dict[str, Any],
        last_context: dict[str, Any] | None = None,
    ) -> Any:
        """Evaluate ``node`` with memoization.

        Errors raised by the evaluator propagate and are never cached.
        """
        analysis = self.analyze(node)

        if analysis.volatile or _reads_live_clock(analysis, context):
            self.stats.uncacheable += 1
            return self._run(node, context)

        snapshot = _snapshot(analysis, context)

        if last_context is not None:
            previous = self._last.get(analysis.key)
            if (
                previous is not None
                and previous[0] == snapshot
                and _snapshot(analysis, last_context) == snapshot
            ):
                self.stats.short_circuits += 1
                return previous[1]

        result_key = _structural_hash(analysis.key, context)
        cached = self._results.get(result_key, _MISSING)
        if cached is not _MISSING:
            self.stats.hits += 1
            self._last.put(analysis.key, (snapshot, cached))
            return cached

        self.stats.misses += 1
        result = self._run(node, context)
        self._results.put(result_key, result)
        self._last.put(analysis.key, (snapshot, result))
        return result

    def _run(self, node: ExpressionNode, context: dict[str, Any]) -> Any:
        self.stats.evaluations += 1
        return self._evaluator(node, context)

    def clear(self) -> None:
        """Drop every entry; used when the schema is refetched."""
        self._results.clear()
        self._analysis.clear()
        self._last.clear()
        logger.debug("Evaluation cache cleared")

    def __len__(self) -> int:
        return len(self._results)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_volatile(node: ExpressionNode) -> bool:
    if isinstance(node, CallExpression) and node.callee in _VOLATILE_FUNCTIONS:
        return True
    if isinstance(node, Literal):
        return False
    return any(_is_volatile(arg) for arg in getattr(node, "arguments", ()))


def _reads_live_clock(analysis: ExpressionAnalysis, context: dict[str, Any]) -> bool:
    """NOW / TODAY read from the wall clock when the context does not pin them."""
    return any(name not in context for name in analysis.system_names if name in ("NOW", "TODAY"))


def _snapshot(analysis: ExpressionAnalysis, context: dict[str, Any]) -> tuple[Any, ...]:
    names = sorted(analysis.fields | (analysis.system_names & SYSTEM_NAMES))
    return tuple(_freeze(context.get(name)) for name in names)


def _freeze(value: Any) -> str:
    return json.dumps(_tagged(value), sort_keys=True, default=str)


def _tagged(value: Any) -> Any:
    # Type-tagged so 1, True and 1.0 (or a date and its ISO string) never collide
    if isinstance(value, dict):
        return ["dict", sorted([str(key), _tagged(item)] for key, item in value.items())]
    if isinstance(value, list | tuple):
        return [type(value).__name__, [_tagged(item) for item in value]]
    if value is None or isinstance(value, bool | int | float | str):
        return [type(value).__name__, value]
    return [type(value).__name__, str(value)]


def _structural_hash(expr_key: str, context: dict[str, Any]) -> str:
    payload = json.dumps({"expression": expr_key, "context": _tagged(context)}, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()
