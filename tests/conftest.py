"""Shared pytest fixtures for schemaform tests."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from schemaform.core.errors import SubmissionError, SyncError
from schemaform.core.ir.schema import Schema
from schemaform.core.rules.normalizer import normalize
from schemaform.runtime.authority import DraftResponse


class FakeAuthority:
    """In-memory ``RecordAuthority`` that records every call.

    ``responses`` queues extra server values returned by successive
    create/sync calls; ``delays`` queues per-call latencies in seconds.
    """

    def __init__(self, schema: dict[str, Any] | None = None, records: dict[str, dict[str, Any]] | None = None):
        self.schema_doc = schema or {}
        self.records = records or {}
        self.calls: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.responses: list[dict[str, Any]] = []
        self.delays: list[float] = []
        self.failures: list[Exception | None] = []
        self.draft_id = "draft-1"
        self.commit_result: dict[str, Any] = {"_id": "rec-1"}
        self.commit_error: SubmissionError | None = None
        self.schema_fetches = 0

    def calls_to(self, method: str) -> list[tuple[str, dict[str, Any], dict[str, Any]]]:
        return [call for call in self.calls if call[0] == method]

    async def _respond(self, payload: dict[str, Any]) -> dict[str, Any]:
        delay = self.delays.pop(0) if self.delays else 0
        extra = self.responses.pop(0) if self.responses else {}
        failure = self.failures.pop(0) if self.failures else None
        if delay:
            await asyncio.sleep(delay)
        if failure is not None:
            raise failure
        return {**payload, **extra}

    async def fetch_schema(self, source: str) -> dict[str, Any]:
        self.schema_fetches += 1
        await asyncio.sleep(0)
        return self.schema_doc

    async def fetch_record(self, source: str, record_id: str) -> dict[str, Any]:
        self.calls.append(("fetch_record", {}, {"record_id": record_id}))
        return dict(self.records[record_id])

    async def create_draft(self, source: str, payload: dict[str, Any]) -> DraftResponse:
        self.calls.append(("create_draft", dict(payload), {}))
        values = await self._respond(payload)
        return DraftResponse(draft_id=self.draft_id, values=values)

    async def sync_draft(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        draft_id: str | None = None,
        record_id: str | None = None,
    ) -> DraftResponse:
        self.calls.append(("sync_draft", dict(payload), {"draft_id": draft_id, "record_id": record_id}))
        values = await self._respond(payload)
        return DraftResponse(draft_id=draft_id, values=values)

    async def commit(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        operation: str,
        record_id: str | None = None,
        draft_id: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(
            ("commit", dict(payload), {"operation": operation, "record_id": record_id, "draft_id": draft_id})
        )
        if self.commit_error is not None:
            raise self.commit_error
        return {**payload, **self.commit_result}


@pytest.fixture
def fixtures_dir() -> Path:
    """Return path to fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def product_doc(fixtures_dir: Path) -> dict[str, Any]:
    """Raw Product schema document as served by the authority."""
    return json.loads((fixtures_dir / "schemas" / "product.json").read_text())


@pytest.fixture
def product_schema(product_doc: dict[str, Any]) -> Schema:
    return normalize(product_doc)


@pytest.fixture
def fake_authority(product_doc: dict[str, Any]) -> FakeAuthority:
    return FakeAuthority(
        schema=product_doc,
        records={
            "rec-7": {
                "_id": "rec-7",
                "Name": "Hammer",
                "Price": 12,
                "Quantity": 2,
                "Discount": 0,
                "Total": 24,
                "Stock": 40,
                "LowStock": False,
                "Category": "tools",
                "InternalNotes": "reorder in May",
            }
        },
    )
