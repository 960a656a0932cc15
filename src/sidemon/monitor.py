"""Event acquisition for one running task.

:class:`TaskMonitor` discovers the task's flow, then supervises four duties
until stopped:

- a status poller publishing :class:`MonitorStatus` changes,
- the action stream feeding :class:`~sidemon.models.FlowAction` snapshots,
- the flow-event stream feeding failed subflows and dev-run lifecycle events,
- a toggle handler starting/stopping the on-demand dev-run output stream.

Everything runs on the caller's event loop; the duties are plain tasks and
all shared state is only touched from that loop. Each output queue is closed
exactly once, after every producer has stopped.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sidemon.client import APIError, SidekickClient
from sidemon.events import (
    DevRunEndedEvent,
    DevRunOutputEvent,
    DevRunStartedEvent,
    EndStreamEvent,
    EventDecodeError,
    FlowEvent,
    StatusChangeEvent,
    decode_flow_event,
)
from sidemon.models import FlowAction, Subflow, Task
from sidemon.streams import PushStream, StreamError, StreamFactory

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TASK_POLL_INTERVAL = 1.0
DEFAULT_FLOW_POLL_INTERVAL = 0.2
DEFAULT_FLOW_WAIT_TIMEOUT = 3.0

STATUS_QUEUE_SIZE = 10
ACTION_QUEUE_SIZE = 1000
SUBFLOW_QUEUE_SIZE = 50
FLOW_EVENT_QUEUE_SIZE = 100
TOGGLE_QUEUE_SIZE = 10

_CLOSED = object()


class QueueClosed(Exception):
    """Raised by :meth:`EventQueue.get` once the queue is closed and drained."""


class EventQueue(Generic[T]):
    """Bounded FIFO queue whose producer side closes it exactly once.

    Consumers read until :class:`QueueClosed`; items put before ``close()`` are
    still delivered. ``async for`` iterates until the end signal.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: T) -> None:
        if self._closed:
            raise QueueClosed("put on closed queue")
        await self._queue.put(item)

    def put_nowait(self, item: T) -> bool:
        """Enqueue without waiting. Returns False when the queue is full."""
        if self._closed:
            raise QueueClosed("put on closed queue")
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            raise RuntimeError("queue already closed")
        self._closed = True
        # Wake a waiting consumer; a full queue has none.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> T:
        if self._closed and self._queue.empty():
            raise QueueClosed
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise QueueClosed
        return item

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except QueueClosed:
            raise StopAsyncIteration from None


class MonitorError(Exception):
    """An acquisition failure reported through :class:`MonitorStatus`."""


@dataclass(frozen=True)
class MonitorStatus:
    """Snapshot of what the monitor knows about its task.

    ``task`` may be None before the first successful fetch; ``error`` is the
    most recent failure and does not by itself end monitoring.
    """

    task: Task | None
    error: Exception | None = None
    finished: bool = False


@dataclass(frozen=True)
class DevRunOutputToggle:
    dev_run_id: str
    show_output: bool


class TaskMonitor:
    """Supervises event acquisition for one task."""

    def __init__(
        self,
        client: SidekickClient,
        workspace_id: str,
        task_id: str,
        *,
        task_poll_interval: float = DEFAULT_TASK_POLL_INTERVAL,
        flow_poll_interval: float = DEFAULT_FLOW_POLL_INTERVAL,
        flow_wait_timeout: float = DEFAULT_FLOW_WAIT_TIMEOUT,
        stream_factory: StreamFactory = PushStream,
    ) -> None:
        self._client = client
        self.workspace_id = workspace_id
        self.task_id = task_id
        self._task_poll_interval = task_poll_interval
        self._flow_poll_interval = flow_poll_interval
        self._flow_wait_timeout = flow_wait_timeout
        self._stream_factory = stream_factory

        self.statuses: EventQueue[MonitorStatus] = EventQueue(STATUS_QUEUE_SIZE)
        self.actions: EventQueue[FlowAction] = EventQueue(ACTION_QUEUE_SIZE)
        self.subflows: EventQueue[Subflow] = EventQueue(SUBFLOW_QUEUE_SIZE)
        self.flow_events: EventQueue[FlowEvent] = EventQueue(FLOW_EVENT_QUEUE_SIZE)
        self._toggles: asyncio.Queue[DevRunOutputToggle] = asyncio.Queue(TOGGLE_QUEUE_SIZE)

        self._current = MonitorStatus(task=None)
        self.flow_id: str | None = None
        self._supervisor: asyncio.Future[None] | None = None
        self._duties: list[asyncio.Task[None]] = []
        self._output_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def current_status(self) -> MonitorStatus:
        return self._current

    @property
    def output_streaming(self) -> bool:
        return self._output_task is not None and not self._output_task.done()

    def start(
        self,
    ) -> tuple[
        EventQueue[MonitorStatus],
        EventQueue[FlowAction],
        EventQueue[Subflow],
        EventQueue[FlowEvent],
    ]:
        """Launch acquisition and return the four output queues.

        Must be called from a running event loop, at most once.
        """
        if self._supervisor is not None:
            raise RuntimeError("monitor already started")
        if self._stopping:
            self._close_queues()
            self._supervisor = asyncio.get_running_loop().create_future()
            self._supervisor.set_result(None)
            return self.statuses, self.actions, self.subflows, self.flow_events
        self._supervisor = asyncio.create_task(
            self._run(), name=f"task-monitor:{self.task_id}"
        )
        # A supervisor cancelled before its first step never reaches _shutdown.
        self._supervisor.add_done_callback(lambda _: self._close_queues())
        return self.statuses, self.actions, self.subflows, self.flow_events

    def stop(self) -> None:
        """Ask every duty to finish. Idempotent; queues close once shutdown completes."""
        if self._stopping:
            return
        self._stopping = True
        if self._supervisor is not None and not self._supervisor.done():
            self._supervisor.cancel()

    async def wait_closed(self) -> None:
        if self._supervisor is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._supervisor

    async def aclose(self) -> None:
        self.stop()
        await self.wait_closed()

    def toggle_dev_run_output(self, dev_run_id: str, show_output: bool) -> None:
        """Request the output stream be started or stopped. Never blocks."""
        try:
            self._toggles.put_nowait(DevRunOutputToggle(dev_run_id, show_output))
        except asyncio.QueueFull:
            log.debug("Dropping dev run output toggle for %s: queue full", dev_run_id)

    # -- Supervisor --

    async def _run(self) -> None:
        try:
            flow_id = await self._discover_flow()
            if flow_id is None:
                return
            self.flow_id = flow_id
            self._duties = [
                asyncio.create_task(self._poll_status(), name="poll-status"),
                asyncio.create_task(self._stream_actions(flow_id), name="action-stream"),
                asyncio.create_task(self._stream_flow_events(flow_id), name="flow-event-stream"),
                asyncio.create_task(self._handle_toggles(), name="output-toggles"),
            ]
            # Runs until stop() cancels the supervisor.
            await asyncio.get_running_loop().create_future()
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        for duty in self._duties:
            duty.cancel()
        await asyncio.gather(*self._duties, return_exceptions=True)
        await self._stop_output_stream()
        self._close_queues()
        log.debug("Monitor for task %s closed", self.task_id)

    def _close_queues(self) -> None:
        for queue in (self.statuses, self.actions, self.subflows, self.flow_events):
            if not queue.closed:
                queue.close()

    async def _publish(self, status: MonitorStatus) -> None:
        self._current = status
        if self._stopping:
            return
        await self.statuses.put(status)

    async def _report_error(self, error: Exception) -> None:
        await self._publish(dataclasses.replace(self._current, error=error, finished=False))

    # -- Flow discovery --

    async def _discover_flow(self) -> str | None:
        try:
            task = await self._client.get_task(self.workspace_id, self.task_id)
        except APIError as exc:
            error = MonitorError(f"failed to get initial task status: {exc}")
            await self._publish(MonitorStatus(task=None, error=error))
            return None

        if await self._publish_if_finished(task):
            return None
        await self._publish(MonitorStatus(task=task))
        if task.flow_id:
            return task.flow_id

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._flow_wait_timeout
        while (remaining := deadline - loop.time()) > 0:
            await asyncio.sleep(min(self._flow_poll_interval, remaining))
            try:
                task = await self._client.get_task(self.workspace_id, self.task_id)
            except APIError as exc:
                log.debug("Polling task %s for a flow failed: %s", self.task_id, exc)
                continue
            if await self._publish_if_finished(task):
                return None
            if task.flow_id:
                await self._publish(MonitorStatus(task=task))
                return task.flow_id

        await self._report_error(MonitorError("no flow ID available after timeout"))
        return None

    async def _publish_if_finished(self, task: Task) -> bool:
        """Publish a task that is already terminal; no duties start for it."""
        if not task.finished:
            return False
        log.debug("Task %s is already %s", self.task_id, task.status)
        await self._publish(MonitorStatus(task=task, finished=True))
        return True

    # -- Duties --

    async def _poll_status(self) -> None:
        last = self._current.task
        while True:
            await asyncio.sleep(self._task_poll_interval)
            try:
                task = await self._client.get_task(self.workspace_id, self.task_id)
            except APIError as exc:
                await self._report_error(exc)
                continue
            if last is not None and task.status == last.status:
                continue
            last = task
            await self._publish(MonitorStatus(task=task, finished=task.finished))
            if task.finished:
                log.debug("Task %s reached terminal status %s", self.task_id, task.status)
                self.stop()
                return

    async def _stream_actions(self, flow_id: str) -> None:
        url = self._client.events_url(
            f"/ws/v1/workspaces/{self.workspace_id}/flows/{flow_id}/action_changes_ws"
        )
        try:
            async with self._stream_factory(url, None) as messages:
                async for message in messages:
                    try:
                        action = FlowAction.from_json(json.loads(message))
                    except ValueError as exc:
                        log.warning("Skipping undecodable flow action: %s", exc)
                        continue
                    await self.actions.put(action)
        except StreamError as exc:
            await self._report_error(MonitorError(f"flow event stream error: {exc}"))

    async def _stream_flow_events(self, flow_id: str) -> None:
        url = self._events_path(flow_id)
        try:
            async with self._stream_factory(url, flow_id) as messages:
                async for message in messages:
                    try:
                        event = decode_flow_event(message)
                    except EventDecodeError as exc:
                        log.warning("Skipping undecodable flow event: %s", exc)
                        continue
                    await self._handle_flow_event(event)
        except StreamError as exc:
            await self._report_error(MonitorError(f"subflow event stream error: {exc}"))

    async def _handle_flow_event(self, event: FlowEvent | None) -> None:
        if isinstance(event, DevRunStartedEvent):
            await self.flow_events.put(event)
        elif isinstance(event, DevRunEndedEvent):
            await self._stop_output_stream()
            await self.flow_events.put(event)
        elif isinstance(event, StatusChangeEvent) and event.is_failed_subflow:
            try:
                subflow = await self._client.get_subflow(self.workspace_id, event.target_id)
            except APIError as exc:
                log.warning("Failed to fetch failed subflow %s: %s", event.target_id, exc)
                return
            await self.subflows.put(subflow)

    async def _handle_toggles(self) -> None:
        while True:
            toggle = await self._toggles.get()
            if toggle.show_output:
                self._start_output_stream(toggle.dev_run_id)
            else:
                await self._stop_output_stream()

    # -- Dev run output --

    def _start_output_stream(self, dev_run_id: str) -> None:
        if self.output_streaming or not dev_run_id or self.flow_id is None or self._stopping:
            return
        self._output_task = asyncio.create_task(
            self._stream_dev_run_output(self.flow_id, dev_run_id),
            name=f"dev-run-output:{dev_run_id}",
        )

    async def _stop_output_stream(self) -> None:
        task, self._output_task = self._output_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _stream_dev_run_output(self, flow_id: str, dev_run_id: str) -> None:
        url = self._events_path(flow_id)
        try:
            async with self._stream_factory(url, dev_run_id) as messages:
                async for message in messages:
                    try:
                        event = decode_flow_event(message)
                    except EventDecodeError as exc:
                        log.warning("Skipping undecodable dev run output: %s", exc)
                        continue
                    if isinstance(event, DevRunOutputEvent):
                        await self.flow_events.put(event)
                    elif isinstance(event, EndStreamEvent):
                        return
        except StreamError as exc:
            log.warning("Dev run output stream for %s ended: %s", dev_run_id, exc)

    def _events_path(self, flow_id: str) -> str:
        return self._client.events_url(
            f"/ws/v1/workspaces/{self.workspace_id}/flows/{flow_id}/events"
        )
