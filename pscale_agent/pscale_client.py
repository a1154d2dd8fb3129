"""Async client for the PlanetScale organization API.

Every HTTP outcome becomes a `CallResult`; only transport failures raise.
Progress narration and entity references are emitted on the run's channel.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Union
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .cancellation import CancelToken
from .config import AgentConfig
from .events import EventChannel, ReferenceEvent, UpdateEvent
from .json_helpers import decode_json_body, to_bounded_json

LOG = logging.getLogger(__name__)

DATABASE_REFERENCE_TYPE = "planetscale.database"
DATABASE_DISPLAY_ICON = "https://avatars.githubusercontent.com/u/35612527?s=64&v=4"


@dataclass(frozen=True)
class CallSuccess:
    data: Any

    ok = True

    def to_payload(self) -> dict[str, Any]:
        return {"ok": True, "data": self.data}


@dataclass(frozen=True)
class CallFailure:
    status: int
    status_text: str
    body: Any

    ok = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": False,
            "status": self.status,
            "statusText": self.status_text,
            "body": self.body,
        }


CallResult = Union[CallSuccess, CallFailure]


class DatabaseRecord(BaseModel):
    """Minimal shape of a PlanetScale database record; other fields are kept."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str


class DatabaseList(BaseModel):
    data: list[DatabaseRecord]


class DatabaseItem(BaseModel):
    data: DatabaseRecord


def database_reference(db: DatabaseRecord) -> dict[str, Any]:
    """Build one citation entry for a database record."""
    return {
        "type": DATABASE_REFERENCE_TYPE,
        "id": db.id,
        "data": db.model_dump(mode="json"),
        "metadata": {
            "display_name": db.name,
            "display_icon": DATABASE_DISPLAY_ICON,
        },
    }


def _segment(value: Any) -> str:
    """Percent-encode one model-supplied path segment."""
    return quote(str(value), safe="")


class PscaleClient:
    """Per-request PlanetScale API client bound to one event channel."""

    def __init__(
        self,
        cfg: AgentConfig,
        channel: EventChannel,
        *,
        token: CancelToken | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth = cfg.planetscale_auth
        self._channel = channel
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=cfg.planetscale_org_url,
            timeout=httpx.Timeout(cfg.planetscale_timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def narrate(self, content: str) -> None:
        """Emit free-form progress narration."""
        self._channel.emit(UpdateEvent(f"{content}  \n\n"))

    async def call(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> CallResult:
        """Issue one authenticated request and normalize its outcome."""
        result = await self._fetch(path, method=method, headers=headers, json_body=json_body)
        self._narrate_outcome(result)
        return result

    async def _fetch(
        self,
        path: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> CallResult:
        if self._token is not None:
            self._token.raise_if_cancelled()

        method = method.upper()
        self._channel.emit(UpdateEvent(f"`{method} {path}..."))

        # Caller headers never override the credential, whatever their casing.
        merged_headers = httpx.Headers(headers or {})
        merged_headers["Authorization"] = self._auth
        started = time.monotonic()
        LOG.debug("fetch.start method=%s path=%s", method, path)

        request_kwargs: dict[str, Any] = {"headers": merged_headers}
        if json_body is not None:
            request_kwargs["json"] = json_body
        response = await self._client.request(method, path, **request_kwargs)

        LOG.debug(
            "fetch.end method=%s path=%s status=%s duration_ms=%.1f",
            method,
            path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
        )

        if not response.is_success:
            return CallFailure(
                status=response.status_code,
                status_text=response.reason_phrase,
                body=decode_json_body(response.text),
            )
        return CallSuccess(data=decode_json_body(response.text))

    def _narrate_outcome(self, result: CallResult) -> None:
        if isinstance(result, CallFailure):
            self._channel.emit(UpdateEvent(f"Error {result.status}`  \n"))
        else:
            self._channel.emit(UpdateEvent("OK`  \n\n"))

    async def list_databases(self) -> CallResult:
        result = await self._fetch("/databases")
        if isinstance(result, CallSuccess):
            try:
                databases = DatabaseList.model_validate(result.data).data
            except ValidationError as exc:
                LOG.warning("unexpected database list shape, skipping references: %s", exc)
            else:
                self._emit_database_references(databases)
        self._narrate_outcome(result)
        return result

    async def get_database(self, name: str) -> CallResult:
        result = await self._fetch(f"/databases/{_segment(name)}")
        if isinstance(result, CallSuccess):
            try:
                database = DatabaseItem.model_validate(result.data).data
            except ValidationError as exc:
                LOG.warning("unexpected database shape, skipping references: %s", exc)
            else:
                self._emit_database_references([database])
        self._narrate_outcome(result)
        return result

    async def list_branches(self, name: str) -> CallResult:
        return await self.call(f"/databases/{_segment(name)}/branches")

    async def get_branch(self, name: str, branch: str) -> CallResult:
        return await self.call(f"/databases/{_segment(name)}/branches/{_segment(branch)}")

    async def get_branch_schema(self, name: str, branch: str) -> CallResult:
        return await self.call(f"/databases/{_segment(name)}/branches/{_segment(branch)}/schema")

    async def list_deploy_requests(self, name: str) -> CallResult:
        return await self.call(f"/databases/{_segment(name)}/deploy-requests")

    async def get_deploy_request(self, name: str, request_id: int) -> CallResult:
        return await self.call(f"/databases/{_segment(name)}/deploy-requests/{_segment(request_id)}")

    def _emit_database_references(self, databases: list[DatabaseRecord]) -> None:
        references = [database_reference(db) for db in databases]
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("emitting database references %s", to_bounded_json(references))
        self._channel.emit(ReferenceEvent(references))
