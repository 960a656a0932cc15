"""Terminal driver: runs the update loop and connects a task session to the monitor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import signal
import sys
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, TextIO

import click

from sidemon.client import APIError, CreateTaskRequest, SidekickClient
from sidemon.config import kanban_url
from sidemon.events import DevRunEndedEvent, DevRunOutputEvent, DevRunStartedEvent, FlowEvent
from sidemon.lifecycle import LifecycleModel
from sidemon.messages import (
    Batch,
    Cmd,
    DevRunEndedMsg,
    DevRunOutputMsg,
    DevRunStartedMsg,
    FlowActionChangeMsg,
    KeyMsg,
    OffHoursBlockedMsg,
    QuitMsg,
    SetMonitorMsg,
    SpinnerTickMsg,
    SubflowFailedMsg,
    TaskChangeMsg,
    TaskErrorMsg,
    TaskFinishedMsg,
    UpdateLifecycleMsg,
    WindowSizeMsg,
)
from sidemon.models import (
    TASK_STATUS_CANCELED,
    TASK_STATUS_COMPLETE,
    TASK_STATUS_FAILED,
    Task,
)
from sidemon.monitor import EventQueue, MonitorStatus, TaskMonitor
from sidemon.off_hours import UNBLOCKED, OffHoursStatus
from sidemon.preferences import MergeStrategyStore
from sidemon.progress import SPINNER_FRAMES

log = logging.getLogger(__name__)

SPINNER_INTERVAL = 0.1
OFF_HOURS_POLL_INTERVAL = 30.0

_NAMED_KEYS = {
    "\r": "enter",
    "\n": "enter",
    "\x1b": "esc",
    "\x7f": "backspace",
    "\x08": "backspace",
    "\t": "tab",
    "\x03": "ctrl+c",
    "\x1b\r": "alt+enter",
    "\x1b\n": "alt+enter",
}


def translate_input(raw: str) -> list[str]:
    """Turn one terminal read into key names.

    A multi-character read is a paste: its line breaks become newlines in the
    text rather than submissions. Unrecognized escape sequences are dropped.
    """
    if raw in _NAMED_KEYS:
        return [_NAMED_KEYS[raw]]
    if raw.startswith("\x1b"):
        return []
    keys: list[str] = []
    for ch in raw:
        if ch in ("\r", "\n"):
            keys.append("alt+enter")
        elif ch in _NAMED_KEYS:
            keys.append(_NAMED_KEYS[ch])
        elif ch.isprintable():
            keys.append(ch)
    return keys


def finish_message(task: Task, link: str) -> str:
    if task.status == TASK_STATUS_COMPLETE:
        return "Task completed"
    if task.status == TASK_STATUS_CANCELED:
        return "Task canceled"
    if task.status == TASK_STATUS_FAILED:
        return f"Task failed. See details at {link}"
    return f"Task finished with status {task.status}"


class Program:
    """Feeds messages into a model, runs its commands and redraws its view.

    Messages may be sent from any task on the loop; key presses arrive from a
    reader thread and interrupt/terminate signals are delivered as ``ctrl+c``.
    """

    def __init__(
        self,
        model: Any,
        *,
        output: TextIO | None = None,
        read_keys: bool = True,
        spinner_interval: float = SPINNER_INTERVAL,
    ) -> None:
        self.model = model
        self._output = output or sys.stdout
        self._read_keys = read_keys
        self._spinner_interval = spinner_interval
        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._commands: set[asyncio.Task[None]] = set()
        self._last_view = ""
        self._loop: asyncio.AbstractEventLoop | None = None
        self._done = False

    def send(self, msg: object) -> None:
        if not self._done:
            self._inbox.put_nowait(msg)

    def quit(self) -> None:
        self.send(QuitMsg())

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._schedule(self.model.init())
        size = shutil.get_terminal_size()
        self.send(WindowSizeMsg(size.columns, size.lines))
        saved_terminal = _save_terminal_mode() if self._read_keys else None
        spinner = asyncio.create_task(self._spin())
        if self._read_keys:
            threading.Thread(target=self._read_key_loop, name="key-reader", daemon=True).start()
        self._install_signal_handlers(loop)
        self._render()
        try:
            while True:
                msg = await self._inbox.get()
                if isinstance(msg, QuitMsg):
                    break
                self._schedule(self.model.update(msg))
                self._render()
        finally:
            self._done = True
            self._remove_signal_handlers(loop)
            _restore_terminal_mode(saved_terminal)
            pending = [spinner, *self._commands]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._render()
            self._output.write("\n")
            self._output.flush()

    # -- Commands --

    def _schedule(self, cmd: Cmd | None) -> None:
        if cmd is None:
            return
        if isinstance(cmd, Batch):
            for each in cmd.cmds:
                self._schedule(each)
            return
        task = asyncio.create_task(self._run_command(cmd))
        self._commands.add(task)
        task.add_done_callback(self._commands.discard)

    async def _run_command(self, cmd: Cmd) -> None:
        try:
            msg = await cmd()
        except Exception:
            log.exception("Command failed")
            return
        if msg is not None:
            self.send(msg)

    async def _spin(self) -> None:
        frame = 0
        while True:
            await asyncio.sleep(self._spinner_interval)
            frame = (frame + 1) % len(SPINNER_FRAMES)
            self.send(SpinnerTickMsg(SPINNER_FRAMES[frame]))

    # -- Rendering --

    def _render(self) -> None:
        view = self.model.view()
        if view == self._last_view:
            return
        erase = ""
        if self._last_view:
            erase = "\r" + "\x1b[1A" * self._last_view.count("\n") + "\x1b[J"
        self._output.write(erase + view)
        self._output.flush()
        self._last_view = view

    # -- Input --

    def _read_key_loop(self) -> None:
        while not self._done:
            try:
                raw = click.getchar()
            except KeyboardInterrupt:
                raw = "\x03"
            except (EOFError, OSError) as exc:
                log.debug("Key reader stopped: %s", exc)
                return
            for key in translate_input(raw):
                if not self._post(KeyMsg(key)):
                    return

    def _post(self, msg: object) -> bool:
        loop = self._loop
        if loop is None or self._done:
            return False
        try:
            loop.call_soon_threadsafe(self.send, msg)
        except RuntimeError:
            return False
        return True

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, self.send, KeyMsg("ctrl+c"))
        if hasattr(signal, "SIGWINCH"):
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(signal.SIGWINCH, self._on_resize)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        sigs = [signal.SIGINT, signal.SIGTERM]
        if hasattr(signal, "SIGWINCH"):
            sigs.append(signal.SIGWINCH)
        for sig in sigs:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)

    def _on_resize(self) -> None:
        size = shutil.get_terminal_size()
        self.send(WindowSizeMsg(size.columns, size.lines))


def _save_terminal_mode() -> Any:
    if sys.platform == "win32" or not sys.stdin.isatty():
        return None
    import termios

    return termios.tcgetattr(sys.stdin.fileno())


def _restore_terminal_mode(saved: Any) -> None:
    if saved is None:
        return
    import termios

    with contextlib.suppress(OSError, termios.error):
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, saved)


def _flow_event_message(event: FlowEvent) -> object | None:
    if isinstance(event, DevRunStartedEvent):
        return DevRunStartedMsg(event.dev_run_id, event.command_id)
    if isinstance(event, DevRunEndedEvent):
        return DevRunEndedMsg(event.dev_run_id, event.command_id)
    if isinstance(event, DevRunOutputEvent):
        return DevRunOutputMsg(event.dev_run_id, event.stream, event.chunk)
    return None


class TaskSession:
    """Creates or attaches to one task and shows it until it ends or is canceled."""

    def __init__(
        self,
        client: SidekickClient,
        workspace_id: str,
        *,
        server_url: str,
        check_off_hours: Callable[[], OffHoursStatus] = lambda: UNBLOCKED,
        store: MergeStrategyStore | None = None,
        monitor_factory: Callable[..., TaskMonitor] = TaskMonitor,
        output: TextIO | None = None,
        read_keys: bool = True,
    ) -> None:
        self._client = client
        self.workspace_id = workspace_id
        self.server_url = server_url
        self._check_off_hours = check_off_hours
        self._monitor_factory = monitor_factory
        self.task: Task | None = None
        self.monitor: TaskMonitor | None = None
        self.exit_code = 0
        self._cancel_flow: asyncio.Task[None] | None = None
        self.model = LifecycleModel(
            interrupt=self._on_interrupt,
            client=client,
            check_off_hours=check_off_hours,
            store=store,
            server_url=server_url,
        )
        self.model.workspace_id = workspace_id
        self.program = Program(self.model, output=output, read_keys=read_keys)

    @property
    def kanban_link(self) -> str:
        return kanban_url(self.server_url, self.workspace_id)

    async def run(
        self,
        *,
        task_id: str | None = None,
        create: CreateTaskRequest | None = None,
        submit_only: bool = False,
    ) -> int:
        """Run the session; returns the process exit code."""
        if (task_id is None) == (create is None):
            raise ValueError("exactly one of task_id or create is required")
        driver = asyncio.create_task(self._drive(task_id, create, submit_only))
        try:
            await self.program.run()
        finally:
            driver.cancel()
            await asyncio.gather(driver, return_exceptions=True)
            if self._cancel_flow is not None:
                await asyncio.gather(self._cancel_flow, return_exceptions=True)
            if self.monitor is not None:
                await self.monitor.aclose()
        return self.exit_code

    # -- Driver --

    async def _drive(
        self, task_id: str | None, create: CreateTaskRequest | None, submit_only: bool
    ) -> None:
        send = self.program.send
        send(UpdateLifecycleMsg("init", "Starting task...", spin=True))
        try:
            if create is not None:
                await self._wait_while_off_hours()
                task = await self._client.create_task(self.workspace_id, create)
            else:
                assert task_id is not None
                task = await self._client.get_task(self.workspace_id, task_id)
        except APIError as exc:
            verb = "create" if create is not None else "load"
            send(UpdateLifecycleMsg("error", f"Failed to {verb} task: {exc}"))
            self.exit_code = 1
            self.program.quit()
            return

        self.task = task
        send(TaskChangeMsg(task))
        if submit_only:
            submitted = f"Task submitted. Follow progress at {self.kanban_link}"
            send(UpdateLifecycleMsg("init", submitted))
            self.program.quit()
            return

        monitor = self._monitor_factory(self._client, self.workspace_id, task.id)
        self.monitor = monitor
        send(SetMonitorMsg(monitor))
        statuses, actions, subflows, flow_events = monitor.start()
        pumps = [
            asyncio.create_task(self._pump(actions, FlowActionChangeMsg)),
            asyncio.create_task(self._pump(subflows, SubflowFailedMsg)),
            asyncio.create_task(self._pump(flow_events, _flow_event_message)),
        ]
        try:
            finished = await self._follow_status(statuses)
        finally:
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

        if not finished and self._cancel_flow is None:
            # Acquisition ended without a terminal status; its error is on screen.
            self.exit_code = 1
            self.program.quit()

    async def _pump(self, queue: EventQueue[Any], to_message: Callable[[Any], object]) -> None:
        async for item in queue:
            msg = to_message(item)
            if msg is not None:
                self.program.send(msg)

    async def _follow_status(self, statuses: EventQueue[MonitorStatus]) -> bool:
        send = self.program.send
        started = False
        async for status in statuses:
            task = status.task
            if task is not None:
                if not started and task.flow_id:
                    started = True
                    send(UpdateLifecycleMsg("init", "Task started"))
                self.task = task
                send(TaskChangeMsg(task))
            if status.error is not None:
                send(TaskErrorMsg(status.error))
            if status.finished and task is not None:
                send(OffHoursBlockedMsg(UNBLOCKED))
                send(TaskFinishedMsg())
                send(UpdateLifecycleMsg("finish", finish_message(task, self.kanban_link)))
                self.program.quit()
                return True
        return False

    async def _wait_while_off_hours(self) -> None:
        while True:
            status = self._check_off_hours()
            if not status.blocked:
                break
            self.program.send(OffHoursBlockedMsg(status))
            delay = OFF_HOURS_POLL_INTERVAL
            if status.unblock_at is not None:
                delay = (status.unblock_at - datetime.now()).total_seconds() + 1
            await asyncio.sleep(max(delay, 1.0))
        self.program.send(OffHoursBlockedMsg(UNBLOCKED))

    # -- Cancellation --

    def _on_interrupt(self) -> None:
        if self._cancel_flow is None:
            self._cancel_flow = asyncio.create_task(self._cancel())

    async def _cancel(self) -> None:
        send = self.program.send
        if self.monitor is not None:
            self.monitor.stop()
        task = self.task
        if task is not None:
            send(UpdateLifecycleMsg("finish", "Canceling task...", spin=True))
            try:
                await self._client.cancel_task(task.workspace_id or self.workspace_id, task.id)
            except APIError as exc:
                send(UpdateLifecycleMsg("error", f"Failed to cancel task: {exc}"))
            send(UpdateLifecycleMsg("finish", "Task cancelled"))
        self.program.quit()
