"""Tests for the CLI commands."""

from __future__ import annotations

from unittest.mock import patch

import click
import pytest
from click.testing import CliRunner

from sidemon import __version__
from sidemon.cli import main, parse_flow_options
from sidemon.client import CreateTaskRequest


@pytest.fixture(autouse=True)
def _no_log_file():
    with patch("sidemon.cli._configure_logging"):
        yield


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


# ---------------------------------------------------------------------------
# parse_flow_options
# ---------------------------------------------------------------------------


def test_flow_options_defaults():
    assert parse_flow_options('{"determineRequirements": true}') == {
        "determineRequirements": True
    }


def test_flow_options_pairs_override_json():
    options = parse_flow_options(
        '{"determineRequirements": true, "model": "a"}',
        ("model=b", 'note="two words"', "empty="),
    )
    assert options == {
        "determineRequirements": True,
        "model": "b",
        "note": "two words",
        "empty": "",
    }


def test_flow_options_value_may_contain_equals():
    assert parse_flow_options("{}", ("query=a=b",)) == {"query": "a=b"}


def test_flow_options_backtick_quotes_are_stripped():
    assert parse_flow_options("{}", ("cmd=`make test`",)) == {"cmd": "make test"}


def test_flow_options_flags():
    options = parse_flow_options(
        '{"determineRequirements": true}',
        no_requirements=True,
        disable_human_in_the_loop=True,
    )
    assert options == {
        "determineRequirements": False,
        "configOverrides": {"disableHumanInTheLoop": True},
    }


def test_flow_options_start_branch_implies_worktree():
    options = parse_flow_options("{}", start_branch="main")
    assert options == {"envType": "local_git_worktree", "startBranch": "main"}


def test_flow_options_worktree_with_branch_pair():
    options = parse_flow_options("{}", ("startBranch=dev",), worktree=True)
    assert options == {"envType": "local_git_worktree", "startBranch": "dev"}


@pytest.mark.parametrize(
    "json_value,pairs,kwargs,message",
    [
        ("{not json", (), {}, "invalid --flow-options JSON"),
        ("[1, 2]", (), {}, "must be a JSON object"),
        ("{}", ("novalue",), {}, "Expected key=value"),
        ("{}", ("=value",), {}, "Key cannot be empty"),
        ("{}", (), {"worktree": True}, "--worktree requires --start-branch"),
        ('{"envType": "local_git_worktree"}', (), {}, "--worktree requires --start-branch"),
    ],
)
def test_flow_options_errors(json_value, pairs, kwargs, message):
    with pytest.raises(click.UsageError, match=message):
        parse_flow_options(json_value, pairs, **kwargs)


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------


def test_task_command_runs_session(runner):
    with patch("sidemon.cli._run_session", return_value=0) as run_session:
        result = runner.invoke(main, ["task", "Fix the login bug", "--workspace", "ws_1"])

    assert result.exit_code == 0, result.output
    run_session.assert_called_once_with(
        "ws_1",
        create=CreateTaskRequest(
            description="Fix the login bug",
            flow_type="basic_dev",
            flow_options={"determineRequirements": True},
        ),
        submit_only=False,
    )


def test_task_command_options(runner):
    with patch("sidemon.cli._run_session", return_value=0) as run_session:
        result = runner.invoke(
            main,
            [
                "task",
                "Add search",
                "--workspace",
                "ws_1",
                "--plan",
                "-n",
                "-O",
                "model=fast",
                "-B",
                "main",
                "--async",
            ],
        )

    assert result.exit_code == 0, result.output
    kwargs = run_session.call_args.kwargs
    assert kwargs["submit_only"] is True
    request = kwargs["create"]
    assert request.flow_type == "planned_dev"
    assert request.flow_options == {
        "determineRequirements": False,
        "model": "fast",
        "envType": "local_git_worktree",
        "startBranch": "main",
    }


def test_task_command_reads_workspace_from_env(runner):
    with patch("sidemon.cli._run_session", return_value=0) as run_session:
        result = runner.invoke(main, ["task", "Do it"], env={"SIDE_WORKSPACE_ID": "ws_env"})

    assert result.exit_code == 0, result.output
    assert run_session.call_args.args == ("ws_env",)


def test_task_command_custom_flow(runner):
    with patch("sidemon.cli._run_session", return_value=0) as run_session:
        result = runner.invoke(main, ["task", "Do it", "--workspace", "ws", "--flow", "ask"])

    assert result.exit_code == 0, result.output
    assert run_session.call_args.kwargs["create"].flow_type == "ask"


def test_task_command_propagates_exit_code(runner):
    with patch("sidemon.cli._run_session", return_value=1):
        result = runner.invoke(main, ["task", "Do it", "--workspace", "ws"])
    assert result.exit_code == 1


def test_task_command_requires_workspace(runner):
    with patch("sidemon.cli._run_session") as run_session:
        result = runner.invoke(main, ["task", "Do it"], env={"SIDE_WORKSPACE_ID": None})
    assert result.exit_code == 2
    assert "--workspace" in result.output
    run_session.assert_not_called()


def test_task_command_rejects_blank_description(runner):
    with patch("sidemon.cli._run_session") as run_session:
        result = runner.invoke(main, ["task", "   ", "--workspace", "ws"])
    assert result.exit_code == 2
    assert "description is required" in result.output
    run_session.assert_not_called()


@pytest.mark.parametrize(
    "extra,message",
    [
        (["-O", "oops"], "Expected key=value"),
        (["--worktree"], "--worktree requires --start-branch"),
        (["--flow-options", "{"], "invalid --flow-options JSON"),
    ],
)
def test_task_command_usage_errors(runner, extra, message):
    with patch("sidemon.cli._run_session") as run_session:
        result = runner.invoke(main, ["task", "Do it", "--workspace", "ws", *extra])
    assert result.exit_code == 2
    assert message in result.output
    run_session.assert_not_called()


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


def test_watch_command(runner):
    with patch("sidemon.cli._run_session", return_value=0) as run_session:
        result = runner.invoke(main, ["watch", "task_9", "--workspace", "ws_1"])

    assert result.exit_code == 0, result.output
    run_session.assert_called_once_with("ws_1", task_id="task_9")


def test_watch_command_propagates_exit_code(runner):
    with patch("sidemon.cli._run_session", return_value=1):
        result = runner.invoke(main, ["watch", "task_9", "--workspace", "ws_1"])
    assert result.exit_code == 1


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_verbose_flag_configures_debug_logging(runner):
    with (
        patch("sidemon.cli._configure_logging") as configure,
        patch("sidemon.cli._run_session", return_value=0),
    ):
        runner.invoke(main, ["-v", "watch", "t", "--workspace", "ws"])
    configure.assert_called_once_with(True)
