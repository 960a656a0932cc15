"""Shared test fixtures: in-memory sidekick client and push streams."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from sidemon.client import APIError, CreateTaskRequest
from sidemon.models import Flow, FlowAction, Subflow, Task, UserResponse

_END = object()


def make_task(
    status: str = "in_progress",
    flow_id: str | None = "f1",
    *,
    task_id: str = "t1",
    workspace_id: str = "ws",
) -> Task:
    flows = (Flow(id=flow_id, flow_type="basic_dev"),) if flow_id else ()
    return Task(id=task_id, workspace_id=workspace_id, status=status, flows=flows)


def human_action(
    action_id: str = "a1",
    params: dict[str, Any] | None = None,
    *,
    status: str = "pending",
    action_type: str = "user_request",
) -> FlowAction:
    return FlowAction(
        id=action_id,
        action_type=action_type,
        action_status=status,
        workspace_id="ws",
        flow_id="f1",
        action_params=params or {},
        is_human_action=True,
        is_callback_action=True,
    )


class FakeClient:
    """Scripted :class:`~sidemon.client.SidekickClient`.

    ``tasks`` are returned by successive ``get_task`` calls; the last one
    repeats. Exceptions in the list are raised instead.
    """

    def __init__(self, tasks: list[Task | Exception] | None = None) -> None:
        self.tasks: list[Task | Exception] = list(tasks or [make_task()])
        self.subflows: dict[str, Subflow] = {}
        self.get_task_calls = 0
        self.get_subflow_calls: list[str] = []
        self.created: list[tuple[str, CreateTaskRequest]] = []
        self.canceled: list[tuple[str, str]] = []
        self.completed: list[tuple[str, str, UserResponse]] = []
        self.user_actions: list[tuple[str, str, str]] = []
        self.queries: list[tuple[str, str, str]] = []
        self.query_result: Any = None
        self.create_error: APIError | None = None
        self.cancel_error: APIError | None = None
        self.complete_error: APIError | None = None
        self.query_error: APIError | None = None

    async def get_task(self, workspace_id: str, task_id: str) -> Task:
        self.get_task_calls += 1
        item = self.tasks.pop(0) if len(self.tasks) > 1 else self.tasks[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def get_subflow(self, workspace_id: str, subflow_id: str) -> Subflow:
        self.get_subflow_calls.append(subflow_id)
        if subflow_id not in self.subflows:
            raise APIError(f"subflow {subflow_id} not found", status_code=404)
        return self.subflows[subflow_id]

    async def create_task(self, workspace_id: str, request: CreateTaskRequest) -> Task:
        if self.create_error is not None:
            raise self.create_error
        self.created.append((workspace_id, request))
        return await self.get_task(workspace_id, "")

    async def cancel_task(self, workspace_id: str, task_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.canceled.append((workspace_id, task_id))

    async def complete_flow_action(
        self, workspace_id: str, flow_action_id: str, response: UserResponse
    ) -> None:
        if self.complete_error is not None:
            raise self.complete_error
        self.completed.append((workspace_id, flow_action_id, response))

    async def send_user_action(self, workspace_id: str, flow_id: str, action_type: str) -> None:
        self.user_actions.append((workspace_id, flow_id, action_type))

    async def query_flow(
        self, workspace_id: str, flow_id: str, query: str, args: Any = None
    ) -> Any:
        self.queries.append((workspace_id, flow_id, query))
        if self.query_error is not None:
            raise self.query_error
        return self.query_result

    def events_url(self, path: str) -> str:
        return "ws://sidekick.test" + path


class StreamHub:
    """Push streams keyed by subscription parent id (None for the action stream).

    Messages fed before a stream opens are buffered for it.
    """

    def __init__(self) -> None:
        self._queues: dict[str | None, asyncio.Queue[Any]] = {}
        self.opened: list[tuple[str, str | None]] = []
        self.closed: list[tuple[str, str | None]] = []
        self.connect_errors: dict[str | None, Exception] = {}

    def queue(self, key: str | None) -> asyncio.Queue[Any]:
        if key not in self._queues:
            self._queues[key] = asyncio.Queue()
        return self._queues[key]

    def feed(self, key: str | None, message: str) -> None:
        self.queue(key).put_nowait(message)

    def fail(self, key: str | None, error: Exception) -> None:
        self.queue(key).put_nowait(error)

    def end(self, key: str | None) -> None:
        self.queue(key).put_nowait(_END)

    def is_open(self, key: str | None) -> bool:
        opened = [url for url, parent in self.opened if parent == key]
        closed = [url for url, parent in self.closed if parent == key]
        return len(opened) > len(closed)

    def factory(self, url: str, parent_id: str | None) -> FakeStream:
        return FakeStream(self, url, parent_id)


class FakeStream:
    def __init__(self, hub: StreamHub, url: str, parent_id: str | None) -> None:
        self.hub = hub
        self.url = url
        self.parent_id = parent_id

    async def __aenter__(self):
        error = self.hub.connect_errors.get(self.parent_id)
        if error is not None:
            raise error
        self.hub.opened.append((self.url, self.parent_id))
        return self._messages()

    async def __aexit__(self, *exc: object) -> None:
        self.hub.closed.append((self.url, self.parent_id))

    async def _messages(self):
        queue = self.hub.queue(self.parent_id)
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def hub() -> StreamHub:
    return StreamHub()
