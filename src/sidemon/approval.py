"""Human input for a pending flow action.

:class:`ApprovalInput` is a small state machine driven by key messages. The
request kind of the pending action picks the starting mode:

    free_form ──enter (non-empty)──▶ submit
    approval ──y──▶ submit approved
             ──n──▶ rejection_feedback ──enter──▶ submit rejected
                                       ──esc──▶ approval
    continue ──enter──▶ submit continued

Submissions are commands that call the API with the action and merge
strategy captured when the key was pressed.
"""

from __future__ import annotations

import enum
import logging
import textwrap

import click

from sidemon.client import APIError, SidekickClient
from sidemon.messages import ApprovalErrorMsg, ApprovalSubmittedMsg, Cmd, KeyMsg
from sidemon.models import (
    ApprovalRequest,
    ContinueRequest,
    FlowAction,
    HumanRequest,
    MergeApprovalRequest,
    UserResponse,
)
from sidemon.preferences import (
    DEFAULT_MERGE_STRATEGY,
    MERGE_STRATEGY_MERGE,
    MERGE_STRATEGY_SQUASH,
    MergeStrategyStore,
)

log = logging.getLogger(__name__)

_APPROVE_LABELS = {"approve_plan": "Approve"}
_REJECT_LABELS = {"reject_plan": "Revise"}
_CONTINUE_LABELS = {"done": "Done", "try_again": "Try Again"}

_MERGE_STRATEGY_LABELS = {
    MERGE_STRATEGY_SQUASH: "Squash merge",
    MERGE_STRATEGY_MERGE: "Regular merge",
}


class InputMode(enum.Enum):
    NONE = "none"
    FREE_FORM = "free_form"
    APPROVAL = "approval"
    REJECTION_FEEDBACK = "rejection_feedback"
    CONTINUE = "continue"


def input_mode_for(request: HumanRequest) -> InputMode:
    if isinstance(request, ApprovalRequest):
        return InputMode.APPROVAL
    if isinstance(request, ContinueRequest):
        return InputMode.CONTINUE
    return InputMode.FREE_FORM


def approve_label(tag: str) -> str:
    return _APPROVE_LABELS.get(tag, "Approve")


def reject_label(tag: str) -> str:
    return _REJECT_LABELS.get(tag, "Reject")


def continue_label(tag: str) -> str:
    return _CONTINUE_LABELS.get(tag, "Continue")


class TextBuffer:
    """Multi-line text entry fed one key at a time."""

    placeholder = "Type your response..."

    def __init__(self) -> None:
        self.value = ""
        self.focused = False

    def focus(self) -> None:
        self.focused = True

    def blur(self) -> None:
        self.focused = False

    def reset(self) -> None:
        self.value = ""

    def handle_key(self, key: str) -> None:
        if not self.focused:
            return
        if key == "backspace":
            self.value = self.value[:-1]
        elif key == "alt+enter":
            self.value += "\n"
        elif key == "tab":
            self.value += "    "
        elif len(key) == 1 and key.isprintable():
            self.value += key

    def view(self) -> str:
        if not self.value:
            cursor = "█" if self.focused else ""
            return "> " + cursor + click.style(self.placeholder, dim=True)
        lines = self.value.split("\n")
        if self.focused:
            lines[-1] += "█"
        return "\n".join("> " + line for line in lines)


class ApprovalInput:
    """Collects the user's answer to one pending human action at a time."""

    def __init__(
        self,
        client: SidekickClient | None = None,
        *,
        store: MergeStrategyStore | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self.buffer = TextBuffer()
        self.action: FlowAction | None = None
        self.request: HumanRequest | None = None
        self.mode = InputMode.NONE
        self.width = 0
        self.quitting = False
        self.merge_strategy: str | None = store.load() if store is not None else None

    @property
    def has_pending_action(self) -> bool:
        return self.action is not None

    @property
    def action_id(self) -> str:
        return self.action.id if self.action is not None else ""

    @property
    def is_merge_approval(self) -> bool:
        return isinstance(self.request, MergeApprovalRequest)

    def set_width(self, width: int) -> None:
        self.width = width

    def set_action(self, action: FlowAction | None) -> None:
        """Make *action* the pending one (None clears it) and pick the input mode."""
        self.action = action
        self.buffer.reset()
        if action is None:
            self.request = None
            self.mode = InputMode.NONE
            self.buffer.blur()
            return

        self.request = action.request
        self.mode = input_mode_for(self.request)
        if isinstance(self.request, MergeApprovalRequest) and self.merge_strategy is None:
            self.merge_strategy = self.request.default_merge_strategy or DEFAULT_MERGE_STRATEGY

        if self.mode is InputMode.FREE_FORM:
            self.buffer.focus()
        else:
            self.buffer.blur()

    def clear(self) -> None:
        self.set_action(None)

    def toggle_merge_strategy(self) -> None:
        if self.merge_strategy == MERGE_STRATEGY_MERGE:
            self.merge_strategy = MERGE_STRATEGY_SQUASH
        else:
            self.merge_strategy = MERGE_STRATEGY_MERGE
        if self._store is not None:
            self._store.save(self.merge_strategy)

    # -- Update --

    def update(self, msg: object) -> Cmd | None:
        if self.action is None or not isinstance(msg, KeyMsg):
            return None
        key = msg.key
        if key == "ctrl+c":
            self.quitting = True
            return None

        if self.mode is InputMode.FREE_FORM:
            return self._update_free_form(key)
        if self.mode is InputMode.APPROVAL:
            return self._update_approval(key)
        if self.mode is InputMode.REJECTION_FEEDBACK:
            return self._update_rejection(key)
        if self.mode is InputMode.CONTINUE and key == "enter":
            return self._submit(UserResponse(content=""), "Continued")
        return None

    def _update_free_form(self, key: str) -> Cmd | None:
        if key == "esc":
            self.buffer.reset()
        elif key == "enter":
            content = self.buffer.value
            if content:
                return self._submit(UserResponse(content=content), content)
        else:
            self.buffer.handle_key(key)
        return None

    def _update_approval(self, key: str) -> Cmd | None:
        if key in ("s", "S") and self.is_merge_approval:
            self.toggle_merge_strategy()
        elif key in ("y", "Y"):
            return self._submit(self._approval_response(True, ""), "Approved")
        elif key in ("n", "N"):
            self.mode = InputMode.REJECTION_FEEDBACK
            self.buffer.reset()
            self.buffer.focus()
        return None

    def _update_rejection(self, key: str) -> Cmd | None:
        if key == "esc":
            self.mode = InputMode.APPROVAL
            self.buffer.reset()
            self.buffer.blur()
        elif key == "enter":
            feedback = self.buffer.value
            summary = f"Rejected: {feedback}" if feedback else "Rejected"
            return self._submit(self._approval_response(False, feedback), summary)
        else:
            self.buffer.handle_key(key)
        return None

    def _approval_response(self, approved: bool, content: str) -> UserResponse:
        params = None
        if isinstance(self.request, MergeApprovalRequest):
            params = {"mergeStrategy": self.merge_strategy or DEFAULT_MERGE_STRATEGY}
            if self.request.target_branch is not None:
                params["targetBranch"] = self.request.target_branch
        return UserResponse(content=content, approved=approved, params=params)

    def _submit(self, response: UserResponse, summary: str) -> Cmd:
        client, action = self._client, self.action

        async def cmd() -> object:
            if client is None or action is None:
                return None
            try:
                await client.complete_flow_action(action.workspace_id, action.id, response)
            except APIError as exc:
                log.warning("Failed to complete flow action %s: %s", action.id, exc)
                return ApprovalErrorMsg(exc)
            return ApprovalSubmittedMsg(action_id=action.id, response_content=summary)

        return cmd

    # -- View --

    def view(self) -> str:
        if self.action is None or self.request is None:
            return ""
        request = self.request
        parts = ["\n"]

        if request.request_content:
            content = request.request_content
            if self.width > 0:
                content = "\n".join(
                    textwrap.fill(line, self.width) if line else line
                    for line in content.split("\n")
                )
            parts.append(f"{content}\n\n")

        if request.command:
            parts.append(click.style(f" {request.command} ", fg="white", bg="black") + "\n")
            if request.working_dir:
                parts.append(f"  Working directory: {request.working_dir}\n")
            parts.append("\n")

        hint_style = {"fg": "bright_black"}
        if self.mode is InputMode.APPROVAL and isinstance(request, ApprovalRequest):
            if isinstance(request, MergeApprovalRequest):
                label = _MERGE_STRATEGY_LABELS.get(
                    self.merge_strategy or DEFAULT_MERGE_STRATEGY, "Squash merge"
                )
                parts.append(
                    f"Merge strategy: {click.style(label, fg='yellow')}  [s] to toggle\n\n"
                )
            parts.append(
                f"Press [y] to {approve_label(request.approve_tag)}, "
                f"[n] to {reject_label(request.reject_tag)}\n"
            )
        elif self.mode is InputMode.REJECTION_FEEDBACK:
            parts.append("Please provide feedback:\n")
            parts.append(self.buffer.view() + "\n")
            parts.append(click.style("Press Enter to submit, Esc to go back", **hint_style) + "\n")
        elif self.mode is InputMode.CONTINUE and isinstance(request, ContinueRequest):
            parts.append(f"Press Enter to {continue_label(request.continue_tag)}\n")
        elif self.mode is InputMode.FREE_FORM:
            parts.append(self.buffer.view() + "\n")
            hint = "Press Enter to submit, Alt+Enter for newline, Esc to clear"
            parts.append(click.style(hint, **hint_style) + "\n")
        return "".join(parts)
