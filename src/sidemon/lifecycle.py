"""Top-level model for a monitored task.

Owns cancellation confirmation (Ctrl+C twice within a short window), the
off-hours gate and status lines, and forwards everything else to the
:class:`~sidemon.progress.ProgressModel` once the task has a flow.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sidemon.approval import ApprovalInput
from sidemon.client import SidekickClient
from sidemon.messages import (
    ClearLifecycleMsg,
    Cmd,
    CtrlCTimeoutMsg,
    DevRunEndedMsg,
    DevRunOutputMsg,
    DevRunStartedMsg,
    DevRunToggleOutputMsg,
    FlowActionChangeMsg,
    KeyMsg,
    OffHoursBlockedMsg,
    OffHoursCheckMsg,
    SetMonitorMsg,
    SpinnerTickMsg,
    SubflowFailedMsg,
    TaskChangeMsg,
    TaskErrorMsg,
    UpdateLifecycleMsg,
    batch,
    tick,
)
from sidemon.off_hours import DEFAULT_OFF_HOURS_MESSAGE, UNBLOCKED, OffHoursStatus
from sidemon.preferences import MergeStrategyStore
from sidemon.progress import CANCEL_HINT, SPINNER_FRAMES, ProgressModel

log = logging.getLogger(__name__)

CTRL_C_CONFIRM_WINDOW = 2.0
OFF_HOURS_RECHECK_INTERVAL = 30.0

CONFIRM_EXIT_HINT = "Press Ctrl+C again to exit."

# Flow events that arrive before the task has a flow are replayed later.
_PROGRESS_EVENTS = (
    FlowActionChangeMsg,
    SubflowFailedMsg,
    DevRunStartedMsg,
    DevRunEndedMsg,
    DevRunOutputMsg,
)


@dataclass(frozen=True)
class LifecycleMessage:
    content: str
    spin: bool
    timestamp: float


def format_unblock_time(when: datetime) -> str:
    """``3:04 PM`` style, no leading zero on the hour."""
    return when.strftime("%I:%M %p").lstrip("0")


class LifecycleModel:
    """Coordinates a task session's UI state."""

    def __init__(
        self,
        *,
        interrupt: Callable[[], None],
        client: SidekickClient | None = None,
        check_off_hours: Callable[[], OffHoursStatus] = lambda: UNBLOCKED,
        store: MergeStrategyStore | None = None,
        server_url: str = "",
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._interrupt = interrupt
        self._client = client
        self._check_off_hours = check_off_hours
        self._store = store
        self.server_url = server_url
        self._clock = clock
        self._now = now

        self.messages: dict[str, LifecycleMessage] = {}
        self.error: Exception | None = None
        self.task_id = ""
        self.workspace_id = ""
        self.flow_id = ""
        self.progress: ProgressModel | None = None
        self.progress_init_at: float | None = None
        self._pending_events: list[object] = []
        self.monitor = None
        self.ctrl_c_pressed_at: float | None = None
        self.blocked = False
        self.blocked_message = ""
        self.unblock_at: datetime | None = None
        self._unblock_check_at: datetime | None = None
        self.spinner = SPINNER_FRAMES[0]

    def init(self) -> Cmd | None:
        return batch(self._check_off_hours_cmd(), self._schedule_recheck())

    @property
    def confirming_exit(self) -> bool:
        return (
            self.ctrl_c_pressed_at is not None
            and self._clock() - self.ctrl_c_pressed_at < CTRL_C_CONFIRM_WINDOW
        )

    # -- Update --

    def update(self, msg: object) -> Cmd | None:
        if isinstance(msg, KeyMsg):
            if msg.key != "ctrl+c":
                return self._propagate(msg)
            if self.confirming_exit:
                self.ctrl_c_pressed_at = None
                self._interrupt()
                return self._propagate(msg)
            pressed_at = self._clock()
            self.ctrl_c_pressed_at = pressed_at
            return tick(CTRL_C_CONFIRM_WINDOW, CtrlCTimeoutMsg(pressed_at))

        if isinstance(msg, CtrlCTimeoutMsg):
            if self.ctrl_c_pressed_at == msg.pressed_at:
                self.ctrl_c_pressed_at = None
            return None

        if isinstance(msg, OffHoursBlockedMsg):
            return self._apply_off_hours(msg.status)

        if isinstance(msg, OffHoursCheckMsg):
            if msg.unblock_at is None:
                return batch(self._check_off_hours_cmd(), self._schedule_recheck())
            if msg.unblock_at != self._unblock_check_at:
                return None
            self._unblock_check_at = None
            return self._check_off_hours_cmd()

        if isinstance(msg, UpdateLifecycleMsg):
            self.messages[msg.key] = LifecycleMessage(msg.content, msg.spin, self._clock())
            return None

        if isinstance(msg, ClearLifecycleMsg):
            self.messages.pop(msg.key, None)
            return None

        if isinstance(msg, TaskChangeMsg):
            return self._apply_task(msg)

        if isinstance(msg, TaskErrorMsg):
            self.error = msg.error
            self.messages["error"] = LifecycleMessage(
                f"Task failed: {msg.error}", False, self._clock()
            )
            return None

        if isinstance(msg, SetMonitorMsg):
            self.monitor = msg.monitor
            return None

        if isinstance(msg, DevRunToggleOutputMsg):
            if self.monitor is not None:
                self.monitor.toggle_dev_run_output(msg.dev_run_id, msg.show_output)
            return self._propagate(msg)

        if isinstance(msg, _PROGRESS_EVENTS) and self.progress is None:
            self._pending_events.append(msg)
            return None

        if isinstance(msg, SpinnerTickMsg):
            self.spinner = msg.frame
        return self._propagate(msg)

    def _propagate(self, msg: object) -> Cmd | None:
        if self.progress is None:
            return None
        return self.progress.update(msg)

    def _apply_task(self, msg: TaskChangeMsg) -> Cmd | None:
        task = msg.task
        self.task_id = task.id
        self.workspace_id = task.workspace_id or self.workspace_id
        if self.progress is not None or not task.flow_id:
            return None

        self.flow_id = task.flow_id
        self.progress = ProgressModel(
            self.task_id,
            self.flow_id,
            self.workspace_id,
            self._client,
            approval=ApprovalInput(self._client, store=self._store),
            server_url=self.server_url,
        )
        self.progress.spinner = self.spinner
        self.progress_init_at = self._clock()
        cmds = [self.progress.init()]
        pending, self._pending_events = self._pending_events, []
        for event in pending:
            cmds.append(self.progress.update(event))
        return batch(*cmds)

    def _apply_off_hours(self, status: OffHoursStatus) -> Cmd | None:
        if status.blocked and status.unblock_at is not None and self._now() >= status.unblock_at:
            status = UNBLOCKED
        self.blocked = status.blocked
        self.blocked_message = status.message if status.blocked else ""
        self.unblock_at = status.unblock_at if status.blocked else None

        # The periodic chain reschedules itself; at most one unblock check is pending.
        if self.unblock_at is None:
            self._unblock_check_at = None
            return None
        if self.unblock_at == self._unblock_check_at:
            return None
        self._unblock_check_at = self.unblock_at
        delay = (self.unblock_at - self._now()).total_seconds()
        return tick(delay, OffHoursCheckMsg(self.unblock_at))

    def _schedule_recheck(self) -> Cmd:
        return tick(OFF_HOURS_RECHECK_INTERVAL, OffHoursCheckMsg())

    def _check_off_hours_cmd(self) -> Cmd:
        check = self._check_off_hours

        async def cmd() -> OffHoursBlockedMsg:
            return OffHoursBlockedMsg(check())

        return cmd

    # -- View --

    def _render_message(self, message: LifecycleMessage) -> str:
        if message.spin:
            return f"{self.spinner} {message.content}"
        return message.content

    def view(self) -> str:
        if self.blocked:
            text = f"{self.spinner} {self.blocked_message or DEFAULT_OFF_HOURS_MESSAGE}\n"
            if self.unblock_at is not None:
                text += f"Unblocks at {format_unblock_time(self.unblock_at)}\n"
            if self.confirming_exit:
                text += f"\n{CONFIRM_EXIT_HINT}"
            return text

        ordered = sorted(self.messages.values(), key=lambda m: m.timestamp)
        if self.progress_init_at is None:
            before, after = ordered, []
        else:
            before = [m for m in ordered if m.timestamp <= self.progress_init_at]
            after = [m for m in ordered if m.timestamp > self.progress_init_at]

        parts = [self._render_message(m) + "\n" for m in before]
        if self.progress is not None:
            progress_view = self.progress.view()
            if self.confirming_exit:
                progress_view = progress_view.replace(CANCEL_HINT, CONFIRM_EXIT_HINT, 1)
            parts.append("\n" + progress_view)
        elif self.confirming_exit:
            parts.append(f"\n{CONFIRM_EXIT_HINT}")
        parts.extend("\n" + self._render_message(m) for m in after)
        return "".join(parts)
