"""Runtime configuration: server location, tunables and the sidekick config file."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from sidemon.off_hours import OffHoursConfig
from sidemon.paths import CONFIG_PATH

log = logging.getLogger(__name__)

DEFAULT_SERVER_PORT = 8855


def _int_env(name: str, default: int, *, min_value: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, int(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


def server_port() -> int:
    """Port of the local sidekick server (``SIDE_SERVER_PORT``)."""
    return _int_env("SIDE_SERVER_PORT", DEFAULT_SERVER_PORT, min_value=1)


def server_url() -> str:
    """Base URL of the sidekick server, without a trailing slash."""
    explicit = os.environ.get("SIDE_SERVER_URL", "").strip()
    if explicit:
        return explicit.rstrip("/")
    return f"http://localhost:{server_port()}"


def kanban_url(base_url: str, workspace_id: str) -> str:
    return f"{base_url}/kanban?workspaceId={workspace_id}"


def flow_url(base_url: str, flow_id: str) -> str:
    return f"{base_url}/flows/{flow_id}"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def load_off_hours_config(path: Path | None = None) -> OffHoursConfig:
    """Load the ``[off_hours]`` table; a missing or unreadable file means no windows."""
    document = _read_toml_file(path or CONFIG_PATH)
    table = document.get("off_hours")
    if not isinstance(table, dict):
        return OffHoursConfig()
    return OffHoursConfig.from_mapping(table)
