"""Wire-level data types for tasks, flows, flow actions and subflows.

Everything here is an immutable snapshot decoded from the sidekick server's
JSON. ``from_json`` constructors are lenient about missing optional fields but
raise ValueError when the payload is not an object or lacks an ``id``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Task statuses
TASK_STATUS_DRAFTING = "drafting"
TASK_STATUS_TO_DO = "to_do"
TASK_STATUS_IN_PROGRESS = "in_progress"
TASK_STATUS_BLOCKED = "blocked"
TASK_STATUS_COMPLETE = "complete"
TASK_STATUS_FAILED = "failed"
TASK_STATUS_CANCELED = "canceled"

TERMINAL_TASK_STATUSES = frozenset(
    {TASK_STATUS_COMPLETE, TASK_STATUS_FAILED, TASK_STATUS_CANCELED}
)

# Flow action statuses
ACTION_STATUS_PENDING = "pending"
ACTION_STATUS_STARTED = "started"
ACTION_STATUS_COMPLETE = "complete"
ACTION_STATUS_FAILED = "failed"

SUBFLOW_STATUS_FAILED = "failed"
SUBFLOW_ID_PREFIX = "sf_"

# Human request kinds
REQUEST_KIND_FREE_FORM = "free_form"
REQUEST_KIND_APPROVAL = "approval"
REQUEST_KIND_MERGE_APPROVAL = "merge_approval"
REQUEST_KIND_CONTINUE = "continue"

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp; missing or malformed values sort first."""
    if not isinstance(value, str) or not value:
        return EPOCH
    text = _FRACTION_RE.sub(r"\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _require_object(data: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{kind} payload must be an object, got {type(data).__name__}")
    if not isinstance(data.get("id"), str) or not data["id"]:
        raise ValueError(f"{kind} payload is missing an id")
    return data


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class Flow:
    id: str
    flow_type: str = ""
    status: str = ""

    @classmethod
    def from_json(cls, data: Any) -> Flow:
        data = _require_object(data, "flow")
        return cls(id=data["id"], flow_type=_str(data, "type"), status=_str(data, "status"))


@dataclass(frozen=True)
class Task:
    """A unit of requested work; only ``flows[0]`` is ever monitored."""

    id: str
    workspace_id: str
    status: str
    title: str = ""
    description: str = ""
    flow_type: str = ""
    flows: tuple[Flow, ...] = ()

    @property
    def flow_id(self) -> str | None:
        return self.flows[0].id if self.flows else None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @classmethod
    def from_json(cls, data: Any) -> Task:
        data = _require_object(data, "task")
        flows = tuple(Flow.from_json(f) for f in data.get("flows") or ())
        return cls(
            id=data["id"],
            workspace_id=_str(data, "workspaceId"),
            status=_str(data, "status"),
            title=_str(data, "title"),
            description=_str(data, "description"),
            flow_type=_str(data, "flowType"),
            flows=flows,
        )


@dataclass(frozen=True)
class Subflow:
    id: str
    name: str = ""
    status: str = ""
    result: str = ""
    flow_id: str = ""
    workspace_id: str = ""
    updated: datetime = EPOCH

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @classmethod
    def from_json(cls, data: Any) -> Subflow:
        data = _require_object(data, "subflow")
        return cls(
            id=data["id"],
            name=_str(data, "name"),
            status=_str(data, "status"),
            result=_str(data, "result"),
            flow_id=_str(data, "flowId"),
            workspace_id=_str(data, "workspaceId"),
            updated=parse_timestamp(data.get("updated")),
        )


# -- Human requests --


@dataclass(frozen=True)
class DevRunContext:
    """Dev-run commands a pending request makes available to the user."""

    commands: tuple[str, ...] = ()

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> DevRunContext | None:
        raw = params.get("devRunContext")
        if isinstance(raw, Mapping) and raw:
            return cls(commands=tuple(sorted(str(k) for k in raw)))
        if isinstance(raw, list | tuple) and raw:
            return cls(commands=tuple(str(c) for c in raw))
        return None


@dataclass(frozen=True)
class HumanRequest:
    kind: str
    request_content: str = ""
    command: str = ""
    working_dir: str = ""
    dev_run: DevRunContext | None = None


@dataclass(frozen=True)
class FreeFormRequest(HumanRequest):
    pass


@dataclass(frozen=True)
class ApprovalRequest(HumanRequest):
    approve_tag: str = ""
    reject_tag: str = ""


@dataclass(frozen=True)
class MergeApprovalRequest(ApprovalRequest):
    target_branch: str | None = None
    default_merge_strategy: str = ""


@dataclass(frozen=True)
class ContinueRequest(HumanRequest):
    continue_tag: str = ""


@dataclass(frozen=True)
class UnstructuredRequest(HumanRequest):
    """A request whose kind this client does not recognize; answered as free-form."""

    params: Mapping[str, Any] = field(default_factory=dict)


def decode_request(params: Mapping[str, Any]) -> HumanRequest:
    """Decode a human action's params into a typed request. Never raises."""
    kind = _str(params, "requestKind")
    common = {
        "kind": kind,
        "request_content": _str(params, "requestContent"),
        "command": _str(params, "command"),
        "working_dir": _str(params, "workingDir"),
        "dev_run": DevRunContext.from_params(params),
    }
    if kind in ("", REQUEST_KIND_FREE_FORM):
        return FreeFormRequest(**common)
    if kind == REQUEST_KIND_APPROVAL:
        return ApprovalRequest(
            **common,
            approve_tag=_str(params, "approveTag"),
            reject_tag=_str(params, "rejectTag"),
        )
    if kind == REQUEST_KIND_MERGE_APPROVAL:
        merge_params = params.get("mergeApprovalInfo")
        if not isinstance(merge_params, Mapping):
            merge_params = {}
        target = _str(merge_params, "targetBranch") or _str(params, "targetBranch")
        return MergeApprovalRequest(
            **common,
            approve_tag=_str(params, "approveTag"),
            reject_tag=_str(params, "rejectTag"),
            target_branch=target or None,
            default_merge_strategy=(
                _str(merge_params, "defaultMergeStrategy") or _str(params, "defaultMergeStrategy")
            ),
        )
    if kind == REQUEST_KIND_CONTINUE:
        return ContinueRequest(**common, continue_tag=_str(params, "continueTag"))
    return UnstructuredRequest(**common, params=dict(params))


# -- Flow actions --


@dataclass(frozen=True)
class FlowAction:
    """One step of a flow; the latest snapshot for an ``id`` supersedes earlier ones."""

    id: str
    action_type: str
    action_status: str
    workspace_id: str = ""
    flow_id: str = ""
    subflow_id: str = ""
    subflow_name: str = ""
    action_params: Mapping[str, Any] = field(default_factory=dict)
    action_result: str = ""
    is_human_action: bool = False
    is_callback_action: bool = False
    created: datetime = EPOCH
    updated: datetime = EPOCH

    @property
    def is_pending(self) -> bool:
        return self.action_status == ACTION_STATUS_PENDING

    @property
    def awaits_human_input(self) -> bool:
        return self.is_human_action and self.is_callback_action and self.is_pending

    @property
    def request(self) -> HumanRequest:
        return decode_request(self.action_params)

    @property
    def sort_key(self) -> datetime:
        return self.updated if self.updated != EPOCH else self.created

    @classmethod
    def from_json(cls, data: Any) -> FlowAction:
        data = _require_object(data, "flow action")
        params = data.get("actionParams")
        return cls(
            id=data["id"],
            action_type=_str(data, "actionType"),
            action_status=_str(data, "actionStatus"),
            workspace_id=_str(data, "workspaceId"),
            flow_id=_str(data, "flowId"),
            subflow_id=_str(data, "subflowId"),
            subflow_name=_str(data, "subflow"),
            action_params=dict(params) if isinstance(params, Mapping) else {},
            action_result=_str(data, "actionResult"),
            is_human_action=bool(data.get("isHumanAction")),
            is_callback_action=bool(data.get("isCallbackAction")),
            created=parse_timestamp(data.get("created")),
            updated=parse_timestamp(data.get("updated")),
        )


@dataclass(frozen=True)
class UserResponse:
    """The body of a completed human action."""

    content: str = ""
    approved: bool | None = None
    choice: str = ""
    params: Mapping[str, Any] | None = None

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"content": self.content}
        if self.approved is not None:
            body["approved"] = self.approved
        if self.choice:
            body["choice"] = self.choice
        if self.params is not None:
            body["params"] = dict(self.params)
        return body

    @classmethod
    def from_json(cls, data: Any) -> UserResponse:
        if not isinstance(data, Mapping):
            raise ValueError("user response must be an object")
        approved = data.get("approved")
        params = data.get("params")
        return cls(
            content=_str(data, "content"),
            approved=approved if isinstance(approved, bool) else None,
            choice=_str(data, "choice"),
            params=dict(params) if isinstance(params, Mapping) else None,
        )
