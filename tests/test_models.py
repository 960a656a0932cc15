"""Tests for wire-level model decoding."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from sidemon.models import (
    EPOCH,
    ApprovalRequest,
    ContinueRequest,
    DevRunContext,
    FlowAction,
    FreeFormRequest,
    MergeApprovalRequest,
    Subflow,
    Task,
    UnstructuredRequest,
    UserResponse,
    decode_request,
    parse_timestamp,
)

# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def test_parse_timestamp_truncates_nanoseconds():
    parsed = parse_timestamp("2024-05-01T10:20:30.123456789Z")
    assert parsed == datetime(2024, 5, 1, 10, 20, 30, 123456, tzinfo=UTC)


def test_parse_timestamp_naive_is_utc():
    assert parse_timestamp("2024-05-01T10:20:30").tzinfo is UTC


@pytest.mark.parametrize("value", [None, "", "yesterday", 12])
def test_parse_timestamp_invalid_sorts_first(value):
    assert parse_timestamp(value) == EPOCH


# ---------------------------------------------------------------------------
# Task / Subflow
# ---------------------------------------------------------------------------


def test_task_from_json():
    task = Task.from_json(
        {
            "id": "task_1",
            "workspaceId": "ws_1",
            "status": "in_progress",
            "title": "Fix it",
            "flowType": "basic_dev",
            "flows": [{"id": "flow_1", "type": "basic_dev", "status": "started"}],
        }
    )
    assert task.id == "task_1"
    assert task.workspace_id == "ws_1"
    assert task.flow_id == "flow_1"
    assert not task.finished


def test_task_without_flows_has_no_flow_id():
    task = Task.from_json({"id": "task_1", "status": "to_do", "flows": None})
    assert task.flow_id is None


@pytest.mark.parametrize("status", ["complete", "failed", "canceled"])
def test_task_terminal_statuses(status):
    assert Task.from_json({"id": "t", "status": status}).finished


@pytest.mark.parametrize("payload", [None, [], {"status": "to_do"}, {"id": ""}])
def test_task_from_json_rejects_malformed(payload):
    with pytest.raises(ValueError):
        Task.from_json(payload)


def test_subflow_display_name_falls_back_to_id():
    subflow = Subflow.from_json({"id": "sf_1", "status": "failed"})
    assert subflow.display_name == "sf_1"
    assert Subflow.from_json({"id": "sf_1", "name": "Coding"}).display_name == "Coding"


# ---------------------------------------------------------------------------
# Flow actions
# ---------------------------------------------------------------------------


def test_flow_action_from_json():
    action = FlowAction.from_json(
        {
            "id": "fa_1",
            "actionType": "user_request",
            "actionStatus": "pending",
            "workspaceId": "ws",
            "flowId": "f1",
            "subflowId": "sf_dev_plan",
            "subflow": "Planning",
            "actionParams": {"requestKind": "approval"},
            "isHumanAction": True,
            "isCallbackAction": True,
            "created": "2024-05-01T10:00:00Z",
            "updated": "2024-05-01T10:05:00Z",
        }
    )
    assert action.awaits_human_input
    assert action.subflow_name == "Planning"
    assert isinstance(action.request, ApprovalRequest)
    assert action.sort_key == datetime(2024, 5, 1, 10, 5, tzinfo=UTC)


def test_flow_action_sort_key_falls_back_to_created():
    action = FlowAction.from_json(
        {
            "id": "fa_1",
            "actionType": "x",
            "actionStatus": "started",
            "created": "2024-05-01T10:00:00Z",
        }
    )
    assert action.sort_key == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


def test_non_callback_human_action_does_not_await_input():
    action = FlowAction.from_json(
        {"id": "fa_1", "actionType": "x", "actionStatus": "pending", "isHumanAction": True}
    )
    assert not action.awaits_human_input


# ---------------------------------------------------------------------------
# Human requests
# ---------------------------------------------------------------------------


def test_decode_free_form_by_default():
    request = decode_request({"requestContent": "What next?"})
    assert isinstance(request, FreeFormRequest)
    assert request.request_content == "What next?"


def test_decode_approval():
    request = decode_request(
        {
            "requestKind": "approval",
            "approveTag": "approve_plan",
            "rejectTag": "reject_plan",
            "command": "make test",
            "workingDir": "/repo",
        }
    )
    assert isinstance(request, ApprovalRequest)
    assert not isinstance(request, MergeApprovalRequest)
    assert request.approve_tag == "approve_plan"
    assert request.command == "make test"
    assert request.working_dir == "/repo"


def test_decode_merge_approval_reads_nested_info():
    request = decode_request(
        {
            "requestKind": "merge_approval",
            "mergeApprovalInfo": {"targetBranch": "main", "defaultMergeStrategy": "merge"},
        }
    )
    assert isinstance(request, MergeApprovalRequest)
    assert request.target_branch == "main"
    assert request.default_merge_strategy == "merge"


def test_decode_merge_approval_without_target_branch():
    request = decode_request({"requestKind": "merge_approval"})
    assert isinstance(request, MergeApprovalRequest)
    assert request.target_branch is None


def test_decode_continue():
    request = decode_request({"requestKind": "continue", "continueTag": "try_again"})
    assert isinstance(request, ContinueRequest)
    assert request.continue_tag == "try_again"


def test_decode_unknown_kind_keeps_params():
    request = decode_request({"requestKind": "multiple_choice", "options": ["a", "b"]})
    assert isinstance(request, UnstructuredRequest)
    assert request.params["options"] == ["a", "b"]


def test_dev_run_context_from_mapping_and_list():
    assert DevRunContext.from_params({"devRunContext": {"web": {}, "api": {}}}) == DevRunContext(
        commands=("api", "web")
    )
    assert DevRunContext.from_params({"devRunContext": ["npm start"]}) == DevRunContext(
        commands=("npm start",)
    )
    assert DevRunContext.from_params({"devRunContext": {}}) is None
    assert DevRunContext.from_params({}) is None


# ---------------------------------------------------------------------------
# User responses
# ---------------------------------------------------------------------------


def test_user_response_omits_unset_fields():
    assert UserResponse(content="hello").to_json() == {"content": "hello"}


def test_user_response_with_approval_and_params():
    response = UserResponse(content="", approved=False, params={"mergeStrategy": "merge"})
    assert response.to_json() == {
        "content": "",
        "approved": False,
        "params": {"mergeStrategy": "merge"},
    }


def test_user_response_from_json():
    response = UserResponse.from_json({"content": "ok", "approved": True, "choice": 3})
    assert response == UserResponse(content="ok", approved=True)
    with pytest.raises(ValueError):
        UserResponse.from_json("ok")
