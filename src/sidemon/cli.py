from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any

import click

from sidemon import __version__
from sidemon.client import CreateTaskRequest, HttpSidekickClient
from sidemon.config import load_off_hours_config, server_url
from sidemon.off_hours import check_off_hours
from sidemon.paths import DEFAULT_LOG_PATH
from sidemon.preferences import MergeStrategyStore
from sidemon.runner import TaskSession

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

DEFAULT_FLOW_TYPE = "basic_dev"
PLANNED_FLOW_TYPE = "planned_dev"
DEFAULT_FLOW_OPTIONS = '{"determineRequirements": true}'
ENV_TYPE_WORKTREE = "local_git_worktree"


def _configure_logging(verbose: bool, log_path: Path = DEFAULT_LOG_PATH) -> None:
    """Send logs to a file so they never interleave with the live view."""
    with contextlib.suppress(OSError):
        log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        filename=str(log_path),
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _strip_quotes(value: str) -> str:
    for quote in ('"', "`"):
        if len(value) >= 2 and value.startswith(quote) and value.endswith(quote):
            return value[1:-1]
    return value


def parse_flow_options(
    flow_options_json: str,
    flow_option_pairs: tuple[str, ...] = (),
    *,
    no_requirements: bool = False,
    disable_human_in_the_loop: bool = False,
    worktree: bool = False,
    start_branch: str | None = None,
) -> dict[str, Any]:
    """Combine ``--flow-options`` JSON with the individual overrides.

    ``key=value`` pairs win over the JSON; worktree flags win over both.
    Raises :class:`click.UsageError` for malformed input.
    """
    try:
        options = json.loads(flow_options_json)
    except ValueError as e:
        raise click.UsageError(
            f"invalid --flow-options JSON (value: {flow_options_json}): {e}"
        ) from e
    if not isinstance(options, dict):
        raise click.UsageError("--flow-options must be a JSON object")

    if no_requirements:
        options["determineRequirements"] = False
    if disable_human_in_the_loop:
        options["configOverrides"] = {"disableHumanInTheLoop": True}

    for pair in flow_option_pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise click.UsageError(f"invalid --flow-option format: '{pair}'. Expected key=value")
        if not key:
            raise click.UsageError(f"invalid --flow-option format: '{pair}'. Key cannot be empty")
        options[key] = _strip_quotes(value)

    if worktree or start_branch:
        options["envType"] = ENV_TYPE_WORKTREE
    if start_branch:
        options["startBranch"] = start_branch
    if options.get("envType") == ENV_TYPE_WORKTREE and not options.get("startBranch"):
        raise click.UsageError("--worktree requires --start-branch")
    return options


def _run_session(workspace_id: str, **run_kwargs: Any) -> int:
    base_url = server_url()

    async def _main() -> int:
        async with HttpSidekickClient(base_url) as client:
            session = TaskSession(
                client,
                workspace_id,
                server_url=base_url,
                check_off_hours=lambda: check_off_hours(load_off_hours_config()),
                store=MergeStrategyStore(),
            )
            return await session.run(**run_kwargs)

    return asyncio.run(_main())


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to the log file.")
def main(verbose: bool):
    """Start and monitor sidekick tasks from the terminal.

    \b
    Quick start:
      side-monitor task "Fix the login bug" --workspace WS    Create a task and follow it
      side-monitor watch TASK_ID --workspace WS               Follow an existing task

    \b
    Environment:
      SIDE_SERVER_URL     Server base URL (default http://localhost:$SIDE_SERVER_PORT)
      SIDE_SERVER_PORT    Server port (default 8855)
      SIDE_WORKSPACE_ID   Default for --workspace
    """
    _configure_logging(verbose)


_workspace_option = click.option(
    "--workspace",
    "workspace_id",
    required=True,
    envvar="SIDE_WORKSPACE_ID",
    help="Workspace ID.",
)


@main.command("task")
@click.argument("description")
@_workspace_option
@click.option(
    "--flow", "flow_type", default=DEFAULT_FLOW_TYPE, show_default=True, help="Flow type."
)
@click.option("--plan", "-p", "planned", is_flag=True, help="Shorthand for --flow planned_dev.")
@click.option(
    "--flow-options",
    "flow_options_json",
    default=DEFAULT_FLOW_OPTIONS,
    show_default=True,
    help="JSON object of flow options.",
)
@click.option(
    "--flow-option",
    "-O",
    "flow_option_pairs",
    multiple=True,
    help="Flow option as key=value (repeatable; overrides --flow-options).",
)
@click.option(
    "--no-requirements",
    "-n",
    is_flag=True,
    help="Set determineRequirements to false.",
)
@click.option(
    "--disable-human-in-the-loop",
    is_flag=True,
    help="Ask the flow not to wait for human input.",
)
@click.option("--worktree", "-w", is_flag=True, help="Run the task in a git worktree.")
@click.option(
    "--start-branch", "-B", default=None, help="Worktree start branch (implies --worktree)."
)
@click.option("--async", "submit_only", is_flag=True, help="Submit the task and exit immediately.")
def task_cmd(
    description: str,
    workspace_id: str,
    flow_type: str,
    planned: bool,
    flow_options_json: str,
    flow_option_pairs: tuple[str, ...],
    no_requirements: bool,
    disable_human_in_the_loop: bool,
    worktree: bool,
    start_branch: str | None,
    submit_only: bool,
):
    """Create a task and follow it until it finishes.

    Press Ctrl+C twice within two seconds to cancel the task.
    """
    if not description.strip():
        raise click.UsageError("A task description is required.")
    flow_options = parse_flow_options(
        flow_options_json,
        flow_option_pairs,
        no_requirements=no_requirements,
        disable_human_in_the_loop=disable_human_in_the_loop,
        worktree=worktree,
        start_branch=start_branch,
    )
    request = CreateTaskRequest(
        description=description,
        flow_type=PLANNED_FLOW_TYPE if planned else flow_type,
        flow_options=flow_options,
    )
    log.info("Creating %s task in workspace %s", request.flow_type, workspace_id)
    exit_code = _run_session(workspace_id, create=request, submit_only=submit_only)
    if exit_code:
        raise SystemExit(exit_code)


@main.command("watch")
@click.argument("task_id")
@_workspace_option
def watch_cmd(task_id: str, workspace_id: str):
    """Follow an existing task until it finishes."""
    log.info("Watching task %s in workspace %s", task_id, workspace_id)
    exit_code = _run_session(workspace_id, task_id=task_id)
    if exit_code:
        raise SystemExit(exit_code)
