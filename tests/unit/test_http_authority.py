"""Tests for HttpRecordAuthority over a mocked httpx transport."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

import httpx
import pytest

from schemaform.core.config import AuthorityConfig
from schemaform.core.errors import RecordLoadError, SchemaError, SubmissionError, SyncError
from schemaform.runtime.authority import (
    DraftResponse,
    HttpRecordAuthority,
    RecordAuthority,
    encode_payload,
    unwrap_data,
)


def _run(coro: Any) -> Any:
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class Recorder:
    """Transport handler that records requests and replies from a route table."""

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.routes.get((request.method, request.url.path))
        if reply is None:
            return httpx.Response(404, json={"detail": "not found"})
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)


def _call(recorder: Callable[[httpx.Request], httpx.Response], action: Callable[[HttpRecordAuthority], Any]) -> Any:
    async def scenario() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(recorder), base_url="http://test") as client:
            authority = HttpRecordAuthority(AuthorityConfig(base_url="http://test"), client=client)
            return await action(authority)

    return _run(scenario())


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


class TestPayloads:
    def test_unwrap_data(self) -> None:
        assert unwrap_data({"Data": {"a": 1}}) == {"a": 1}
        assert unwrap_data({"a": 1}) == {"a": 1}
        assert unwrap_data(["x"]) == {}

    def test_draft_response_from_payload(self) -> None:
        response = DraftResponse.from_payload(
            {"Data": {"_id": 42, "Total": 9}, "ValidationFailures": [{"Rule": "R1"}]}
        )
        assert response.draft_id == "42"
        assert response.values == {"Total": 9}
        assert response.validation_failures == [{"Rule": "R1"}]

    def test_satisfies_protocol(self) -> None:
        assert isinstance(HttpRecordAuthority(), RecordAuthority)

    def test_encode_payload_renders_dates(self) -> None:
        payload = {"Start": date(2026, 11, 2), "At": datetime(2026, 11, 2, 9, 30), "Tags": ("a", None)}
        assert encode_payload(payload) == {"Start": "2026-11-02", "At": "2026-11-02T09:30:00", "Tags": ["a", None]}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestReads:
    def test_fetch_schema_unwraps_blob(self) -> None:
        recorder = Recorder({("GET", "/api/app/meta/bdo/Product"): {"BOBlob": {"Id": "Product", "Fields": {}}}})
        schema = _call(recorder, lambda authority: authority.fetch_schema("Product"))
        assert schema == {"Id": "Product", "Fields": {}}

    def test_fetch_record(self) -> None:
        recorder = Recorder({("GET", "/api/app/Product/rec-7/read"): {"Data": {"_id": "rec-7", "Name": "Hammer"}}})
        record = _call(recorder, lambda authority: authority.fetch_record("Product", "rec-7"))
        assert record["Name"] == "Hammer"

    def test_missing_schema_raises_schema_error(self) -> None:
        with pytest.raises(SchemaError) as exc_info:
            _call(Recorder({}), lambda authority: authority.fetch_schema("Product"))
        assert exc_info.value.context["status"] == 404

    def test_record_failure_is_retryable(self) -> None:
        routes = {("GET", "/api/app/Product/rec-7/read"): httpx.Response(503, text="busy")}
        with pytest.raises(RecordLoadError) as exc_info:
            _call(Recorder(routes), lambda authority: authority.fetch_record("Product", "rec-7"))
        assert exc_info.value.retryable is True

    def test_invalid_json(self) -> None:
        routes = {("GET", "/api/app/meta/bdo/Product"): httpx.Response(200, text="<html>")}
        with pytest.raises(SchemaError, match="invalid JSON"):
            _call(Recorder(routes), lambda authority: authority.fetch_schema("Product"))

    def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SchemaError, match="failed"):
            _call(handler, lambda authority: authority.fetch_schema("Product"))


class TestDrafts:
    def test_create_draft(self) -> None:
        recorder = Recorder({("PATCH", "/api/app/Product/draft"): {"Data": {"_id": "d-1", "Name": "Hammer"}}})
        draft = _call(recorder, lambda authority: authority.create_draft("Product", {"Name": "Hammer"}))
        assert draft.draft_id == "d-1"
        assert recorder.body() == {"Name": "Hammer"}

    def test_create_draft_sends_dates_as_iso_strings(self) -> None:
        recorder = Recorder({("PATCH", "/api/app/Leave/draft"): {"Data": {"_id": "d-1"}}})
        draft = _call(recorder, lambda authority: authority.create_draft("Leave", {"Start": date(2026, 11, 2)}))
        assert draft.draft_id == "d-1"
        assert recorder.body() == {"Start": "2026-11-02"}

    def test_unencodable_payload_raises_sync_error(self) -> None:
        recorder = Recorder({("PATCH", "/api/app/Leave/draft"): {"Data": {"_id": "d-1"}}})
        with pytest.raises(SyncError, match="not JSON-serializable"):
            _call(recorder, lambda authority: authority.sync_draft("Leave", {"Blob": object()}, draft_id="d-1"))
        assert recorder.requests == []

    def test_sync_draft_sends_draft_id(self) -> None:
        recorder = Recorder({("PATCH", "/api/app/Product/draft"): {"Data": {"_id": "d-1", "Total": 30}}})
        draft = _call(recorder, lambda authority: authority.sync_draft("Product", {"Quantity": 3}, draft_id="d-1"))
        assert recorder.body() == {"Quantity": 3, "_id": "d-1"}
        assert draft.values == {"Total": 30}

    def test_sync_against_record(self) -> None:
        recorder = Recorder({("PATCH", "/api/app/Product/rec-7/draft"): {"Data": {"Quantity": 3}}})
        _call(recorder, lambda authority: authority.sync_draft("Product", {"Quantity": 3}, record_id="rec-7"))
        assert recorder.requests[0].url.path == "/api/app/Product/rec-7/draft"
        assert recorder.body() == {"Quantity": 3}

    def test_sync_failure_raises_sync_error(self) -> None:
        routes = {("PATCH", "/api/app/Product/draft"): httpx.Response(500, text="boom")}
        with pytest.raises(SyncError) as exc_info:
            _call(Recorder(routes), lambda authority: authority.sync_draft("Product", {"A": 1}, draft_id="d"))
        assert exc_info.value.context == {"status": 500, "body": "boom"}


class TestCommit:
    def test_update(self) -> None:
        recorder = Recorder({("POST", "/api/app/Product/rec-7/update"): {"Data": {"_id": "rec-7"}}})
        data = _call(
            recorder,
            lambda authority: authority.commit("Product", {"Quantity": 5}, operation="update", record_id="rec-7"),
        )
        assert data == {"_id": "rec-7"}

    def test_update_requires_record_id(self) -> None:
        with pytest.raises(SubmissionError):
            _call(Recorder({}), lambda authority: authority.commit("Product", {}, operation="update"))

    def test_create_from_draft(self) -> None:
        recorder = Recorder({("POST", "/api/app/Product/draft"): {"Data": {"_id": "d-1"}}})
        _call(recorder, lambda authority: authority.commit("Product", {"A": 1}, operation="create", draft_id="d-1"))
        assert recorder.body() == {"A": 1, "_id": "d-1"}

    def test_one_shot_create(self) -> None:
        recorder = Recorder({("POST", "/api/app/Product/create"): {"Data": {"_id": "new"}}})
        data = _call(recorder, lambda authority: authority.commit("Product", {"A": 1}, operation="create"))
        assert data == {"_id": "new"}

    def test_commit_failure(self) -> None:
        routes = {("POST", "/api/app/Product/create"): httpx.Response(422, json={"detail": "bad"})}
        with pytest.raises(SubmissionError):
            _call(Recorder(routes), lambda authority: authority.commit("Product", {}, operation="create"))

    def test_commit_sends_datetimes_as_iso_strings(self) -> None:
        recorder = Recorder({("POST", "/api/app/Leave/create"): {"Data": {"_id": "new"}}})
        payload = {"Start": date(2026, 11, 2), "Filed": datetime(2026, 10, 16, 8, 0)}
        _call(recorder, lambda authority: authority.commit("Leave", payload, operation="create"))
        assert recorder.body() == {"Start": "2026-11-02", "Filed": "2026-10-16T08:00:00"}


class TestHeaders:
    def test_config_headers_are_sent(self) -> None:
        recorder = Recorder({("GET", "/api/app/meta/bdo/Product"): {"Fields": {}}})

        async def scenario() -> None:
            config = AuthorityConfig(base_url="http://test", headers={"Authorization": "Bearer t0k"})
            client = httpx.AsyncClient(
                transport=httpx.MockTransport(recorder), base_url=config.base_url, headers=config.headers
            )
            async with HttpRecordAuthority(config, client=client) as authority:
                await authority.fetch_schema("Product")
            await client.aclose()

        _run(scenario())
        assert recorder.requests[0].headers["Authorization"] == "Bearer t0k"
