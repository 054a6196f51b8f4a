"""
TTL cache of normalized schemas, keyed by record source.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..core.ir.schema import Schema
from ..core.rules.normalizer import normalize
from .authority import RecordAuthority

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_TTL = 30 * 60


@dataclass
class _Entry:
    schema: Schema
    expires_at: float


class SchemaStore:
    """Fetches, normalizes and caches schemas for ``ttl`` seconds."""

    def __init__(
        self,
        authority: RecordAuthority,
        ttl: float = DEFAULT_SCHEMA_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.authority = authority
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, source: str) -> Schema:
        """Normalized schema for ``source``; fetched when missing or expired.

        Raises:
            SchemaError: If the fetch fails or the document is malformed.
        """
        entry = self._fresh(source)
        if entry is not None:
            return entry.schema

        # One fetch per source even with concurrent callers
        lock = self._locks.setdefault(source, asyncio.Lock())
        async with lock:
            entry = self._fresh(source)
            if entry is not None:
                return entry.schema
            raw = await self.authority.fetch_schema(source)
            schema = normalize(raw)
            self._entries[source] = _Entry(schema=schema, expires_at=self._clock() + self.ttl)
            logger.info("Loaded schema %s (%d fields)", source, len(schema.fields))
            return schema

    def _fresh(self, source: str) -> _Entry | None:
        entry = self._entries.get(source)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[source]
            return None
        return entry

    def invalidate(self, source: str | None = None) -> None:
        """Forget one source, or every source when ``source`` is None."""
        if source is None:
            self._entries.clear()
        else:
            self._entries.pop(source, None)
