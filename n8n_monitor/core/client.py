"""Client for the public REST API of a single n8n instance.

A client is a plain value built from a base URL and a decrypted API key.
It holds no connection state: every call opens its own short-lived
``httpx.AsyncClient``, so a rotated credential never outlives the
client that carried it.
"""

import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from n8n_monitor import config
from n8n_monitor.core import crypto
from n8n_monitor.core.errors import UpstreamError
from n8n_monitor.core.models import parse_timestamp

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
WORKFLOW_PAGE_SIZE = 250


class RemoteWorkflow(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    name: str = ""
    active: bool = False
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    connections: dict[str, Any] = Field(default_factory=dict)
    tags: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v)

    @field_validator("updated_at", "created_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_timestamp(v)

    @field_validator("nodes", "tags", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return v or []

    @field_validator("connections", mode="before")
    @classmethod
    def _none_to_dict(cls, v):
        return v or {}


class RemoteExecution(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    finished: bool = False
    mode: str | None = None
    status: str | None = None
    workflow_id: str | None = Field(default=None, alias="workflowId")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    stopped_at: datetime | None = Field(default=None, alias="stoppedAt")
    retry_of: str | None = Field(default=None, alias="retryOf")
    data: Any = None

    @field_validator("id", "workflow_id", "retry_of", mode="before")
    @classmethod
    def _coerce_str(cls, v):
        return None if v is None else str(v)

    @field_validator("started_at", "stopped_at", mode="before")
    @classmethod
    def _parse_ts(cls, v):
        return parse_timestamp(v)


class ExecutionPage(BaseModel):
    data: list[RemoteExecution]
    count: int
    next_cursor: str | None = None


def normalize_base_url(base_url: str) -> str:
    """Strip trailing slashes and a trailing /api or /api/v1."""
    url = base_url.strip().rstrip("/")
    for suffix in ("/api/v1", "/api"):
        if url.endswith(suffix):
            url = url[: -len(suffix)]
            break
    return url.rstrip("/")


def _unwrap(body: Any) -> Any:
    # The API answers either bare or inside a {"data": ...} envelope
    if isinstance(body, dict) and "data" in body and "id" not in body:
        return body["data"]
    return body


class InstanceClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = normalize_base_url(base_url)
        self._api_key = api_key
        self._timeout = config.HTTP_TIMEOUT if timeout is None else timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"InstanceClient(base_url={self.base_url!r})"

    async def _request(
        self, method: str, endpoint: str, params: dict | None = None
    ) -> Any:
        url = f"{API_PREFIX}{endpoint}"
        headers = {
            "Accept": "application/json",
            "X-N8N-API-KEY": self._api_key,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, url, params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"n8n API unreachable at {self.base_url}: {e}"
            ) from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise UpstreamError(
                f"n8n API error: {resp.status_code} {resp.reason_phrase} - "
                f"{resp.text[:500]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(
                f"n8n API returned invalid JSON for {endpoint}",
                status_code=resp.status_code,
            ) from e

    async def test_connection(self) -> bool:
        # /me is not exposed everywhere; /users is a cheap authenticated check
        try:
            await self._request("GET", "/users", params={"limit": 1})
            return True
        except Exception as e:
            logger.info("Connection test failed for %s: %s", self.base_url, e)
            return False

    async def list_workflows(self) -> list[RemoteWorkflow]:
        """Every workflow on the instance, following ``nextCursor`` pages."""
        workflows: list[RemoteWorkflow] = []
        cursor = None
        seen: set[str] = set()
        while True:
            params: dict[str, Any] = {"limit": WORKFLOW_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            body = await self._request("GET", "/workflows", params=params)
            if isinstance(body, list):
                items, cursor = body, None
            elif isinstance(body, dict) and isinstance(body.get("data"), list):
                items, cursor = body["data"], body.get("nextCursor")
            else:
                raise UpstreamError("n8n API returned an unexpected workflow list")
            workflows.extend(RemoteWorkflow.model_validate(w) for w in items)

            if not cursor or cursor in seen:
                return workflows
            seen.add(cursor)

    async def get_workflow(self, remote_id: str) -> RemoteWorkflow:
        body = _unwrap(await self._request("GET", f"/workflows/{remote_id}"))
        return RemoteWorkflow.model_validate(body)

    async def list_executions(
        self,
        workflow_id: str | None = None,
        limit: int = 20,
        finished: bool | None = None,
        status: str | None = None,
    ) -> ExecutionPage:
        params: dict[str, Any] = {"limit": limit}
        if workflow_id:
            params["workflowId"] = workflow_id
        if finished is not None:
            params["finished"] = "true" if finished else "false"
        if status:
            params["status"] = status

        body = await self._request("GET", "/executions", params=params)
        if isinstance(body, list):
            items, count, cursor = body, len(body), None
        elif isinstance(body, dict):
            items = body.get("data") or []
            count = body.get("count", len(items))
            cursor = body.get("nextCursor")
        else:
            raise UpstreamError("n8n API returned an unexpected execution list")
        return ExecutionPage(
            data=[RemoteExecution.model_validate(e) for e in items],
            count=count,
            next_cursor=cursor,
        )

    async def get_execution(
        self, remote_id: str, include_data: bool = True
    ) -> RemoteExecution:
        params = {"includeData": "true"} if include_data else None
        body = _unwrap(
            await self._request("GET", f"/executions/{remote_id}", params=params)
        )
        return RemoteExecution.model_validate(body)

    async def activate_workflow(self, remote_id: str) -> RemoteWorkflow:
        return await self._set_active(remote_id, True)

    async def deactivate_workflow(self, remote_id: str) -> RemoteWorkflow:
        return await self._set_active(remote_id, False)

    async def _set_active(self, remote_id: str, active: bool) -> RemoteWorkflow:
        action = "activate" if active else "deactivate"
        try:
            body = await self._request("POST", f"/workflows/{remote_id}/{action}")
        except UpstreamError as e:
            if e.status_code != 400:
                raise
            # Some versions reject a no-op toggle; accept it if already there
            current = await self.get_workflow(remote_id)
            if current.active != active:
                raise
            logger.debug("Workflow %s already %sd", remote_id, action)
            return current
        if body is None:
            return await self.get_workflow(remote_id)
        return RemoteWorkflow.model_validate(_unwrap(body))


def client_for(instance) -> InstanceClient:
    """Build a fresh client for an instance row, decrypting its API key."""
    return InstanceClient(instance.base_url, crypto.decrypt(instance.api_key))
