"""Messages and commands for the interactive update loop.

Models are driven by ``update(msg)``, which mutates the model and may return a
command: an async callable producing the next message (or None). The runner
awaits each command in the background and feeds its result back into
``update``. :func:`batch` groups commands that should run concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sidemon.models import FlowAction, Subflow, Task
from sidemon.off_hours import OffHoursStatus

Cmd = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class Batch:
    """Commands to run concurrently; each result is delivered separately."""

    cmds: tuple[Cmd, ...]

    async def __call__(self) -> None:
        await asyncio.gather(*(cmd() for cmd in self.cmds))


def batch(*cmds: Cmd | None) -> Cmd | None:
    flat: list[Cmd] = []
    for cmd in cmds:
        if cmd is None:
            continue
        if isinstance(cmd, Batch):
            flat.extend(cmd.cmds)
        else:
            flat.append(cmd)
    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return Batch(tuple(flat))


def message(msg: Any) -> Cmd:
    """A command that immediately yields *msg*."""

    async def cmd() -> Any:
        return msg

    return cmd


def tick(delay: float, msg: Any) -> Cmd:
    """A command that yields *msg* after *delay* seconds."""

    async def cmd() -> Any:
        await asyncio.sleep(max(0.0, delay))
        return msg

    return cmd


# -- Terminal input --


@dataclass(frozen=True)
class KeyMsg:
    """A key press. Named keys: enter, alt+enter, esc, backspace, tab, ctrl+c."""

    key: str


@dataclass(frozen=True)
class WindowSizeMsg:
    width: int
    height: int


@dataclass(frozen=True)
class SpinnerTickMsg:
    frame: str


@dataclass(frozen=True)
class QuitMsg:
    pass


# -- Acquisition --


@dataclass(frozen=True)
class TaskChangeMsg:
    task: Task


@dataclass(frozen=True)
class TaskErrorMsg:
    error: Exception


@dataclass(frozen=True)
class TaskFinishedMsg:
    pass


@dataclass(frozen=True)
class FlowActionChangeMsg:
    action: FlowAction


@dataclass(frozen=True)
class SubflowFailedMsg:
    subflow: Subflow


@dataclass(frozen=True)
class DevRunStartedMsg:
    dev_run_id: str
    command_id: str = ""


@dataclass(frozen=True)
class DevRunEndedMsg:
    dev_run_id: str
    command_id: str = ""


@dataclass(frozen=True)
class DevRunOutputMsg:
    dev_run_id: str
    stream: str
    chunk: str


@dataclass(frozen=True)
class DevRunToggleOutputMsg:
    dev_run_id: str
    show_output: bool


@dataclass(frozen=True)
class DevRunConfigResultMsg:
    action_id: str
    has_dev_run: bool


@dataclass(frozen=True)
class DevRunActionMsg:
    action: str


# -- Approval --


@dataclass(frozen=True)
class ApprovalSubmittedMsg:
    action_id: str
    response_content: str


@dataclass(frozen=True)
class ApprovalErrorMsg:
    error: Exception


# -- Lifecycle --


@dataclass(frozen=True)
class UpdateLifecycleMsg:
    key: str
    content: str
    spin: bool = False


@dataclass(frozen=True)
class ClearLifecycleMsg:
    key: str


@dataclass(frozen=True)
class CtrlCTimeoutMsg:
    pressed_at: float


@dataclass(frozen=True)
class OffHoursBlockedMsg:
    status: OffHoursStatus


@dataclass(frozen=True)
class OffHoursCheckMsg:
    """Re-evaluate off hours.

    A periodic check carries no ``unblock_at``; the single check scheduled for
    an unblock time carries that time and is ignored once superseded.
    """

    unblock_at: datetime | None = None


@dataclass(frozen=True)
class SetMonitorMsg:
    monitor: Any
