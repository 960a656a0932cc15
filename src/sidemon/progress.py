"""Progress view: folds flow actions, failed subflows and dev-run events into a display."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Mapping
from typing import Any

import click

from sidemon.approval import ApprovalInput
from sidemon.client import (
    USER_ACTION_DEV_RUN_START,
    USER_ACTION_DEV_RUN_STOP,
    APIError,
    SidekickClient,
)
from sidemon.config import flow_url
from sidemon.messages import (
    ApprovalErrorMsg,
    ApprovalSubmittedMsg,
    Cmd,
    DevRunActionMsg,
    DevRunConfigResultMsg,
    DevRunEndedMsg,
    DevRunOutputMsg,
    DevRunStartedMsg,
    DevRunToggleOutputMsg,
    FlowActionChangeMsg,
    KeyMsg,
    SpinnerTickMsg,
    SubflowFailedMsg,
    TaskFinishedMsg,
    WindowSizeMsg,
    message,
)
from sidemon.models import (
    ACTION_STATUS_COMPLETE,
    ACTION_STATUS_FAILED,
    ACTION_STATUS_PENDING,
    ACTION_STATUS_STARTED,
    FlowAction,
    Subflow,
    UserResponse,
)

log = logging.getLogger(__name__)

SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")

INDICATOR = "⏺"
RESULT_PREFIX = "⎿"
MAX_RESULT_LENGTH = 80
MAX_DEV_RUN_OUTPUT_LINES = 100
DEV_RUN_CONFIG_QUERY = "dev_run_config"

CANCEL_HINT = "To cancel, press ctrl+c."

_ACTION_DISPLAY_NAMES = {
    "apply_edit_blocks": "Applying edits",
    "generate.code_context": "Analyzing code context",
    "merge": "Merging changes",
    "user_request": "Waiting for input",
    "user_request.paused": "Paused - waiting for guidance",
}

_HIDDEN_ACTION_TYPES = frozenset(
    {"ranked_repo_summary", "cleanup_worktree", "generate.branch_names"}
)
_HIDDEN_UNLESS_PENDING = frozenset({"user_request.continue"})

_SUBFLOW_HEADERS = (
    ("dev_requirements", "Refining requirements"),
    ("dev_plan", "Planning"),
)


def _title(words: list[str]) -> str:
    return " ".join(w.capitalize() for w in words if w)


def get_action_display_name(action_type: str) -> str:
    """Human-readable label for an action type."""
    if action_type in _ACTION_DISPLAY_NAMES:
        return _ACTION_DISPLAY_NAMES[action_type]
    if action_type.startswith("user_request.approve."):
        return "Waiting for approval"
    if action_type.startswith("generate."):
        return "Generating " + _title(action_type.removeprefix("generate.").split("_"))
    return _title(action_type.replace(".", " ").replace("_", " ").split(" "))


def should_hide_action(action_type: str, action_status: str) -> bool:
    if action_type in _HIDDEN_ACTION_TYPES:
        return True
    return action_type in _HIDDEN_UNLESS_PENDING and action_status != ACTION_STATUS_PENDING


def get_subflow_display_name(subflow_id: str) -> str | None:
    for marker, label in _SUBFLOW_HEADERS:
        if marker in subflow_id:
            return label
    return None


def format_user_response(response: UserResponse) -> str:
    if response.approved is not None:
        verdict = "Approved" if response.approved else "Rejected"
        return f"{verdict}: {response.content}" if response.content else verdict
    if response.choice:
        return response.choice
    return response.content


def format_action_params(params: Mapping[str, Any]) -> str:
    parts = [params[k] for k in ("path", "file", "name") if isinstance(params.get(k), str)]
    parts = [p for p in parts if p]
    return ", ".join(parts)


def truncate_result(result: str) -> str:
    line = result.split("\n", 1)[0]
    if len(line) > MAX_RESULT_LENGTH:
        return line[: MAX_RESULT_LENGTH - 3] + "..."
    return line


def _decode_user_response(result: str) -> UserResponse | None:
    try:
        return UserResponse.from_json(json.loads(result))
    except ValueError:
        return None


class DevRunSession:
    """Dev runs reported by the flow, plus the output of the one being shown."""

    def __init__(self) -> None:
        self.active: dict[str, str] = {}  # command id -> dev run id
        self.current_id = ""
        self.show_output = False
        self.output: deque[str] = deque(maxlen=MAX_DEV_RUN_OUTPUT_LINES)

    @property
    def running(self) -> bool:
        return bool(self.active)

    def started(self, dev_run_id: str, command_id: str = "") -> None:
        self.active[command_id or dev_run_id] = dev_run_id
        if not self.current_id:
            self.current_id = dev_run_id

    def ended(self, dev_run_id: str, command_id: str = "") -> None:
        self.active.pop(command_id or dev_run_id, None)
        if self.current_id != dev_run_id:
            return
        self.current_id = next(iter(self.active.values()), "")
        self.show_output = False
        self.output.clear()

    def toggle_output(self) -> bool:
        self.show_output = not self.show_output
        if not self.show_output:
            self.output.clear()
        return self.show_output

    def append_output(self, dev_run_id: str, chunk: str) -> None:
        if self.show_output and dev_run_id == self.current_id:
            self.output.extend(chunk.splitlines() or [""])


class ProgressModel:
    """Everything shown for a running task's flow."""

    def __init__(
        self,
        task_id: str,
        flow_id: str,
        workspace_id: str,
        client: SidekickClient | None = None,
        *,
        approval: ApprovalInput | None = None,
        server_url: str = "",
    ) -> None:
        self.task_id = task_id
        self.flow_id = flow_id
        self.workspace_id = workspace_id
        self._client = client
        self.server_url = server_url
        self.approval = approval or ApprovalInput(client)
        self.actions: list[FlowAction] = []
        self._positions: dict[str, int] = {}
        self.failed_subflows: list[Subflow] = []
        self.current_subflow: FlowAction | None = None
        self.submitted_responses: dict[str, str] = {}
        self.dev_run = DevRunSession()
        # Action ids whose dev_run_config query found a configuration.
        self._dev_run_configured: set[str] = set()
        self._dev_run_config_queried: set[str] = set()
        self.spinner = SPINNER_FRAMES[0]
        self.quitting = False
        self.error: Exception | None = None
        self.width = 0

    def init(self) -> Cmd | None:
        return None

    @property
    def has_dev_run_context(self) -> bool:
        """Dev run controls are offered only while the action declaring them is pending."""
        request = self.approval.request
        if request is None:
            return False
        return request.dev_run is not None or self.approval.action_id in self._dev_run_configured

    # -- Update --

    def update(self, msg: object) -> Cmd | None:
        if isinstance(msg, WindowSizeMsg):
            self.width = msg.width
            self.approval.set_width(msg.width)
        elif isinstance(msg, KeyMsg):
            return self._handle_key(msg)
        elif isinstance(msg, ApprovalSubmittedMsg):
            self.submitted_responses[msg.action_id] = msg.response_content
            self.approval.clear()
        elif isinstance(msg, ApprovalErrorMsg):
            self.error = msg.error
        elif isinstance(msg, SubflowFailedMsg):
            self.failed_subflows.append(msg.subflow)
        elif isinstance(msg, TaskFinishedMsg):
            self.quitting = True
        elif isinstance(msg, FlowActionChangeMsg):
            return self.apply_action(msg.action)
        elif isinstance(msg, DevRunStartedMsg):
            self.dev_run.started(msg.dev_run_id, msg.command_id)
        elif isinstance(msg, DevRunEndedMsg):
            self.dev_run.ended(msg.dev_run_id, msg.command_id)
        elif isinstance(msg, DevRunOutputMsg):
            self.dev_run.append_output(msg.dev_run_id, msg.chunk)
        elif isinstance(msg, DevRunConfigResultMsg):
            if msg.has_dev_run:
                self._dev_run_configured.add(msg.action_id)
        elif isinstance(msg, DevRunActionMsg):
            log.debug("Dev run action %s accepted", msg.action)
        elif isinstance(msg, SpinnerTickMsg):
            self.spinner = msg.frame
        return None

    def _handle_key(self, msg: KeyMsg) -> Cmd | None:
        typing = self.approval.buffer.focused
        if self.has_dev_run_context and not typing:
            if msg.key in ("d", "D"):
                if self.dev_run.running:
                    return self._submit_dev_run_action(USER_ACTION_DEV_RUN_STOP)
                return self._submit_dev_run_action(USER_ACTION_DEV_RUN_START)
            if msg.key in ("o", "O"):
                if not self.dev_run.running:
                    return None
                show = self.dev_run.toggle_output()
                return message(DevRunToggleOutputMsg(self.dev_run.current_id, show))

        if self.approval.has_pending_action:
            cmd = self.approval.update(msg)
            if self.approval.quitting:
                self.quitting = True
            return cmd
        if msg.key == "ctrl+c":
            self.quitting = True
        return None

    def apply_action(self, action: FlowAction) -> Cmd | None:
        """Fold one action snapshot into the view state."""
        if action.subflow_id:
            self.current_subflow = action

        cmd: Cmd | None = None
        if action.awaits_human_input:
            if action.id not in self.submitted_responses and self.approval.action_id != action.id:
                self.approval.set_action(action)
                cmd = self._discover_dev_run_context(action)
        elif self.approval.action_id == action.id:
            self.approval.clear()

        if should_hide_action(action.action_type, action.action_status):
            self._forget(action.id)
        elif action.id in self._positions:
            self.actions[self._positions[action.id]] = action
        else:
            self._positions[action.id] = len(self.actions)
            self.actions.append(action)
        return cmd

    def _forget(self, action_id: str) -> None:
        if action_id not in self._positions:
            return
        del self.actions[self._positions.pop(action_id)]
        self._positions = {a.id: i for i, a in enumerate(self.actions)}

    def _discover_dev_run_context(self, action: FlowAction) -> Cmd | None:
        if action.request.dev_run is not None or action.id in self._dev_run_config_queried:
            return None
        if self._client is None or not self.flow_id or not self.workspace_id:
            return None
        self._dev_run_config_queried.add(action.id)
        client, workspace_id, flow_id = self._client, self.workspace_id, self.flow_id
        action_id = action.id

        async def cmd() -> DevRunConfigResultMsg:
            try:
                result = await client.query_flow(workspace_id, flow_id, DEV_RUN_CONFIG_QUERY)
            except APIError as exc:
                log.debug("Dev run config query failed: %s", exc)
                return DevRunConfigResultMsg(action_id, has_dev_run=False)
            configured = isinstance(result, dict) and bool(result)
            return DevRunConfigResultMsg(action_id, has_dev_run=configured)

        return cmd

    def _submit_dev_run_action(self, action_type: str) -> Cmd | None:
        client, workspace_id, flow_id = self._client, self.workspace_id, self.flow_id
        if client is None:
            return None

        async def cmd() -> object:
            try:
                await client.send_user_action(workspace_id, flow_id, action_type)
            except APIError as exc:
                return ApprovalErrorMsg(exc)
            return DevRunActionMsg(action_type)

        return cmd

    # -- View --

    def view(self) -> str:
        parts: list[str] = []

        if self.current_subflow is not None:
            header = get_subflow_display_name(self.current_subflow.subflow_id)
            if header:
                parts.append(f"\n{header}\n")

        items: list[tuple[Any, str]] = [(a.sort_key, self._render_action(a)) for a in self.actions]
        items.extend((s.updated, self._render_failed_subflow(s)) for s in self.failed_subflows)
        items.sort(key=lambda item: item[0])
        parts.extend(rendered for _, rendered in items)

        if self.has_dev_run_context:
            parts.append("\n" + self._render_dev_run())

        if self.approval.has_pending_action:
            parts.append(self.approval.view())

        if self.quitting:
            parts.append("\n")
            if self.error is not None:
                parts.append(f"Error: {self.error}\n")
        else:
            if not self.approval.has_pending_action:
                parts.append(f"\n{self.spinner} Working... {CANCEL_HINT}")
            parts.append(
                "\n⚠️  Sidekick's cli-only mode is *experimental*. "
                f"Interact via {flow_url(self.server_url, self.flow_id)}"
            )
        return "".join(parts)

    def _render_dev_run(self) -> str:
        session = self.dev_run
        if not session.running:
            return "Dev Run: Stopped  [d] to start\n"
        running = click.style("Running", fg="bright_green")
        count = len(session.active)
        label = running if count == 1 else f"{running} ({count})"
        toggle = "  [o] to hide output\n" if session.show_output else "  [o] to show output\n"
        text = f"Dev Run: {label}  [d] to stop{toggle}"
        if session.show_output and session.output:
            body = "\n".join("│ " + line for line in session.output)
            text += click.style(body, fg="bright_black") + "\n"
        return text

    def _render_failed_subflow(self, subflow: Subflow) -> str:
        red = click.style(INDICATOR, fg="red")
        return f"  {red} {subflow.display_name}: {subflow.result or 'unknown error'}\n"

    def _render_action(self, action: FlowAction) -> str:
        name = get_action_display_name(action.action_type)
        status = action.action_status

        if status == ACTION_STATUS_COMPLETE:
            green = click.style(INDICATOR, fg="green")
            if action.is_human_action and action.action_result:
                response = _decode_user_response(action.action_result)
                text = format_user_response(response) if response is not None else ""
                if text:
                    return f"  {green} You: {click.style(text, fg='bright_black')}\n"
            return f"  {green} {name}\n"

        if status == ACTION_STATUS_FAILED:
            red = click.style(INDICATOR, fg="red")
            return f"  {red} {name}: {action.action_result or 'unknown error'}\n"

        if status == ACTION_STATUS_STARTED:
            line = f"  {self.spinner} {name}"
            params = format_action_params(action.action_params)
            if params:
                line += f" {params}"
            line += "\n"
            if action.action_result:
                line += f"    {RESULT_PREFIX} {truncate_result(action.action_result)}\n"
            return line

        if status == ACTION_STATUS_PENDING and action.id in self.submitted_responses:
            return f"  {self.spinner} Processing response...\n"
        return f"  {click.style(INDICATOR, fg='yellow')} {name}\n"
