"""HTTP client for the sidekick server API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlsplit, urlunsplit

import httpx

from sidemon.models import Subflow, Task, UserResponse

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

USER_ACTION_DEV_RUN_START = "dev_run_start"
USER_ACTION_DEV_RUN_STOP = "dev_run_stop"


@dataclass(frozen=True)
class CreateTaskRequest:
    description: str
    flow_type: str
    title: str = ""
    flow_options: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "flowType": self.flow_type,
            "flowOptions": dict(self.flow_options),
        }


@runtime_checkable
class SidekickClient(Protocol):
    """Structural interface for sidekick API clients.

    :class:`HttpSidekickClient` talks to a real server; tests substitute
    in-memory fakes. Every method raises :class:`APIError` on failure.
    """

    async def get_task(self, workspace_id: str, task_id: str) -> Task: ...

    async def get_subflow(self, workspace_id: str, subflow_id: str) -> Subflow: ...

    async def create_task(self, workspace_id: str, request: CreateTaskRequest) -> Task: ...

    async def cancel_task(self, workspace_id: str, task_id: str) -> None: ...

    async def complete_flow_action(
        self, workspace_id: str, flow_action_id: str, response: UserResponse
    ) -> None: ...

    async def send_user_action(self, workspace_id: str, flow_id: str, action_type: str) -> None: ...

    async def query_flow(
        self, workspace_id: str, flow_id: str, query: str, args: Any = None
    ) -> Any: ...

    def events_url(self, path: str) -> str: ...


def websocket_base_url(base_url: str) -> str:
    """Map an http(s) base URL onto the matching ws(s) scheme."""
    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


class HttpSidekickClient:
    """Async sidekick API client over ``httpx``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def get_task(self, workspace_id: str, task_id: str) -> Task:
        data = await self._request("GET", f"/api/v1/workspaces/{workspace_id}/tasks/{task_id}")
        return self._decode(Task.from_json, data.get("task"), "task")

    async def get_subflow(self, workspace_id: str, subflow_id: str) -> Subflow:
        data = await self._request(
            "GET", f"/api/v1/workspaces/{workspace_id}/subflows/{subflow_id}"
        )
        return self._decode(Subflow.from_json, data.get("subflow"), "subflow")

    async def create_task(self, workspace_id: str, request: CreateTaskRequest) -> Task:
        data = await self._request(
            "POST", f"/api/v1/workspaces/{workspace_id}/tasks", json=request.to_json()
        )
        # Older servers wrap the created task like the GET endpoint does.
        payload = data.get("task", data)
        return self._decode(Task.from_json, payload, "task")

    async def cancel_task(self, workspace_id: str, task_id: str) -> None:
        await self._request("POST", f"/api/v1/workspaces/{workspace_id}/tasks/{task_id}/cancel")

    async def complete_flow_action(
        self, workspace_id: str, flow_action_id: str, response: UserResponse
    ) -> None:
        await self._request(
            "POST",
            f"/api/v1/workspaces/{workspace_id}/flow_actions/{flow_action_id}/complete",
            json={"userResponse": response.to_json()},
        )

    async def send_user_action(self, workspace_id: str, flow_id: str, action_type: str) -> None:
        await self._request(
            "POST",
            f"/api/v1/workspaces/{workspace_id}/flows/{flow_id}/user_action",
            json={"actionType": action_type},
        )

    async def query_flow(
        self, workspace_id: str, flow_id: str, query: str, args: Any = None
    ) -> Any:
        body: dict[str, Any] = {"query": query}
        if args is not None:
            body["args"] = args
        data = await self._request(
            "POST", f"/api/v1/workspaces/{workspace_id}/flows/{flow_id}/query", json=body
        )
        return data.get("result")

    def events_url(self, path: str) -> str:
        return websocket_base_url(self.base_url) + path

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> HttpSidekickClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # -- Internal --

    async def _request(
        self, method: str, path: str, *, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._http.request(method, path, json=json)
        except httpx.HTTPError as exc:
            log.debug("%s %s failed: %s", method, path, exc)
            raise APIError(f"{method} {path} failed: {exc}") from exc

        if not response.is_success:
            body = response.text
            raise APIError(
                f"{method} {path} failed with status {response.status_code}: "
                f"{_error_detail(response) or body}",
                status_code=response.status_code,
                body=body,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise APIError(
                f"failed to decode response for {method} {path}: {exc}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        return data if isinstance(data, dict) else {"result": data}

    @staticmethod
    def _decode(decoder: Any, payload: Any, kind: str) -> Any:
        try:
            return decoder(payload)
        except ValueError as exc:
            raise APIError(f"malformed {kind} in response: {exc}") from exc


def _error_detail(response: httpx.Response) -> str:
    """Return the server's ``{"error": ...}`` message, if the body carries one."""
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return ""


class APIError(Exception):
    """Raised when a sidekick API call fails.

    ``status_code`` is 0 for transport failures that never produced a response.
    """

    def __init__(self, message: str, *, status_code: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
