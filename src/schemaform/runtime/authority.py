"""
Remote record authority boundary.

The authority owns the authoritative record: it serves schemas and records,
runs computation and business-logic rules on drafts, and persists commits.
``RecordAuthority`` is the protocol the engine talks to;
``HttpRecordAuthority`` implements it over ``httpx.AsyncClient``.

Endpoints (relative to ``{base_url}{api_prefix}``):
    GET    /meta/bdo/{source}          schema
    GET    /{source}/{id}/read         record
    PATCH  /{source}/draft             draft create / interactive sync
    PATCH  /{source}/{id}/draft        update-mode sync
    POST   /{source}/draft             commit an interactive create
    POST   /{source}/create            one-shot create
    POST   /{source}/{id}/update       update
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..core.config import AuthorityConfig
from ..core.errors import FormEngineError, RecordLoadError, SchemaError, SubmissionError, SyncError

logger = logging.getLogger(__name__)

DRAFT_ID_KEY = "_id"

_PAYLOAD = TypeAdapter(dict[str, Any])


class DraftResponse(BaseModel):
    """Result of a draft-create or draft-sync call."""

    draft_id: str | None = Field(default=None, description="Draft identity assigned by the authority")
    values: dict[str, Any] = Field(default_factory=dict, description="Field values returned by the authority")
    validation_failures: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_payload(cls, payload: Any) -> DraftResponse:
        body = unwrap_data(payload)
        failures = payload.get("ValidationFailures") if isinstance(payload, dict) else None
        draft_id = body.get(DRAFT_ID_KEY)
        values = {key: value for key, value in body.items() if key != DRAFT_ID_KEY}
        return cls(
            draft_id=str(draft_id) if draft_id is not None else None,
            values=values,
            validation_failures=list(failures or []),
        )


def encode_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe copy of a payload: dates and datetimes become ISO strings.

    Raises:
        ValueError: If a value has no JSON representation.
    """
    return _PAYLOAD.dump_python(payload, mode="json")


def unwrap_data(payload: Any) -> dict[str, Any]:
    """Return the ``Data`` object of a wrapped response, or the payload itself."""
    if isinstance(payload, dict):
        data = payload.get("Data", payload)
        if isinstance(data, dict):
            return data
    return {}


@runtime_checkable
class RecordAuthority(Protocol):
    async def fetch_schema(self, source: str) -> dict[str, Any]: ...

    async def fetch_record(self, source: str, record_id: str) -> dict[str, Any]: ...

    async def create_draft(self, source: str, payload: dict[str, Any]) -> DraftResponse: ...

    async def sync_draft(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        draft_id: str | None = None,
        record_id: str | None = None,
    ) -> DraftResponse: ...

    async def commit(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        operation: str,
        record_id: str | None = None,
        draft_id: str | None = None,
    ) -> dict[str, Any]: ...


class HttpRecordAuthority:
    """``RecordAuthority`` over HTTP.

    Pass ``client`` to share or mock the transport; otherwise a client is
    created from ``config`` and closed by ``aclose()``.
    """

    def __init__(
        self,
        config: AuthorityConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or AuthorityConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            headers=self.config.headers,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpRecordAuthority:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _url(self, *parts: str) -> str:
        prefix = self.config.api_prefix.rstrip("/")
        return "/".join((prefix, *parts))

    async def _request(
        self,
        method: str,
        url: str,
        error_cls: type[FormEngineError],
        *,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            body = encode_payload(json) if json is not None else None
        except (TypeError, ValueError) as e:
            logger.warning("%s %s payload is not JSON-serializable: %s", method, url, e)
            raise error_cls(f"{method} {url} payload is not JSON-serializable: {e}") from e
        try:
            resp = await self._client.request(method, url, json=body)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("%s %s returned %d", method, url, e.response.status_code)
            raise error_cls(
                f"{method} {url} returned {e.response.status_code}",
                {"status": e.response.status_code, "body": e.response.text[:200]},
            ) from e
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise error_cls(f"{method} {url} failed: {e}") from e
        except ValueError as e:
            raise error_cls(f"{method} {url} returned invalid JSON") from e

    # ------------------------------------------------------------------
    # RecordAuthority
    # ------------------------------------------------------------------

    async def fetch_schema(self, source: str) -> dict[str, Any]:
        payload = await self._request("GET", self._url("meta", "bdo", source), SchemaError)
        if not isinstance(payload, dict):
            raise SchemaError(f"Schema for {source} is not an object")
        # Some deployments wrap the document
        for key in ("BOBlob", "BDOBlob"):
            if isinstance(payload.get(key), dict):
                return payload[key]
        return payload

    async def fetch_record(self, source: str, record_id: str) -> dict[str, Any]:
        payload = await self._request("GET", self._url(source, record_id, "read"), RecordLoadError)
        return unwrap_data(payload)

    async def create_draft(self, source: str, payload: dict[str, Any]) -> DraftResponse:
        response = await self._request("PATCH", self._url(source, "draft"), SyncError, json=payload)
        draft = DraftResponse.from_payload(response)
        logger.info("Created draft %s for %s", draft.draft_id, source)
        return draft

    async def sync_draft(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        draft_id: str | None = None,
        record_id: str | None = None,
    ) -> DraftResponse:
        if record_id is not None:
            url = self._url(source, record_id, "draft")
            body = payload
        else:
            url = self._url(source, "draft")
            body = {**payload, DRAFT_ID_KEY: draft_id} if draft_id is not None else payload
        response = await self._request("PATCH", url, SyncError, json=body)
        return DraftResponse.from_payload(response)

    async def commit(
        self,
        source: str,
        payload: dict[str, Any],
        *,
        operation: str,
        record_id: str | None = None,
        draft_id: str | None = None,
    ) -> dict[str, Any]:
        if operation == "update":
            if record_id is None:
                raise SubmissionError("Update commit requires a record id")
            url = self._url(source, record_id, "update")
            body = payload
        elif draft_id is not None:
            url = self._url(source, "draft")
            body = {**payload, DRAFT_ID_KEY: draft_id}
        else:
            url = self._url(source, "create")
            body = payload
        response = await self._request("POST", url, SubmissionError, json=body)
        return unwrap_data(response)
