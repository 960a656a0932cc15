"""Persisted user preferences."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from sidemon.paths import MERGE_STRATEGY_PREFS_PATH

log = logging.getLogger(__name__)

MERGE_STRATEGY_SQUASH = "squash"
MERGE_STRATEGY_MERGE = "merge"
DEFAULT_MERGE_STRATEGY = MERGE_STRATEGY_SQUASH


class MergeStrategyStore:
    """The merge strategy last chosen by the user, kept across runs.

    Stored as ``{"mergeStrategy": "..."}``. Reads never fail: a missing or
    unreadable file, or a strategy other than squash or merge, means no
    preference. Writes replace the file atomically
    and are best effort.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or MERGE_STRATEGY_PREFS_PATH

    def load(self) -> str | None:
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError):
            return None
        strategy = data.get("mergeStrategy") if isinstance(data, dict) else None
        if strategy not in (MERGE_STRATEGY_SQUASH, MERGE_STRATEGY_MERGE):
            log.debug("Ignoring unknown merge strategy preference %r", strategy)
            return None
        return strategy

    def save(self, strategy: str) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps({"mergeStrategy": strategy}))
            os.replace(tmp, self.path)
        except OSError as exc:
            log.warning("Failed to save merge strategy preference to %s: %s", self.path, exc)
