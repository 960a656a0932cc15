"""Canonical filesystem paths for side-monitor configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

SIDEKICK_CONFIG_DIR = Path.home() / ".config" / "sidekick"

CONFIG_PATH = SIDEKICK_CONFIG_DIR / "config.toml"

MERGE_STRATEGY_PREFS_PATH = SIDEKICK_CONFIG_DIR / "merge_strategy_prefs.json"

_env_log = os.environ.get("SIDE_MONITOR_LOG_PATH")
DEFAULT_LOG_PATH = (
    Path(_env_log).expanduser() if _env_log else SIDEKICK_CONFIG_DIR / "side-monitor.log"
)
