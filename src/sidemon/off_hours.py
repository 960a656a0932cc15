"""Off-hours blocking: recurring local-time windows during which work should not start."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

log = logging.getLogger(__name__)

DEFAULT_OFF_HOURS_MESSAGE = "Time to rest!"

_WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


@dataclass(frozen=True)
class OffHoursWindow:
    """One recurring window. ``end`` before ``start`` means it crosses midnight."""

    start: str
    end: str
    days: tuple[str, ...] = ()


@dataclass(frozen=True)
class OffHoursConfig:
    message: str = ""
    windows: tuple[OffHoursWindow, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> OffHoursConfig:
        """Build a config from a parsed ``[off_hours]`` table, skipping malformed windows."""
        message = data.get("message", "")
        windows: list[OffHoursWindow] = []
        for raw in data.get("windows", ()) or ():
            if not isinstance(raw, Mapping):
                log.warning("Ignoring off-hours window %r: not a table", raw)
                continue
            days = raw.get("days") or ()
            if isinstance(days, str):
                days = (days,)
            windows.append(
                OffHoursWindow(
                    start=str(raw.get("start", "")),
                    end=str(raw.get("end", "")),
                    days=tuple(str(d) for d in days),
                )
            )
        return cls(message=message if isinstance(message, str) else "", windows=tuple(windows))


@dataclass(frozen=True)
class OffHoursStatus:
    blocked: bool = False
    unblock_at: datetime | None = None
    message: str = ""


UNBLOCKED = OffHoursStatus()


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``HH:MM`` (24-hour). Raises ValueError on anything else."""
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError(f"invalid time format: {value}")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"invalid time format: {value}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"invalid time values: {value}")
    return hour, minute


def _weekday_name(when: datetime) -> str:
    return _WEEKDAYS[when.weekday()]


def _at(when: datetime, hour: int, minute: int, *, days_ahead: int = 0) -> datetime:
    base = when.replace(hour=hour, minute=minute, second=0, microsecond=0)
    return base + timedelta(days=days_ahead)


def window_unblock_at(when: datetime, window: OffHoursWindow) -> datetime | None:
    """Return when *window* stops blocking *when*, or None if it does not block."""
    try:
        start_h, start_m = parse_time_of_day(window.start)
        end_h, end_m = parse_time_of_day(window.end)
    except ValueError as e:
        log.debug("Skipping off-hours window %s-%s: %s", window.start, window.end, e)
        return None

    start = start_h * 60 + start_m
    end = end_h * 60 + end_m
    current = when.hour * 60 + when.minute
    overnight = end < start

    if window.days:
        days = {d.lower() for d in window.days}
        today = _weekday_name(when)
        yesterday = _weekday_name(when - timedelta(days=1))
        if overnight:
            # Morning part belongs to the window that started yesterday.
            if current < end and yesterday in days:
                return _at(when, end_h, end_m)
            if current >= start and today in days:
                return _at(when, end_h, end_m, days_ahead=1)
            return None
        if today not in days:
            return None

    if not overnight:
        if start <= current < end:
            return _at(when, end_h, end_m)
        return None
    if current >= start:
        return _at(when, end_h, end_m, days_ahead=1)
    if current < end:
        return _at(when, end_h, end_m)
    return None


def is_off_hours_blocked_at(when: datetime, config: OffHoursConfig) -> OffHoursStatus:
    """Evaluate *config* at local time *when*; the first matching window wins."""
    if not config.windows:
        return UNBLOCKED
    message = config.message or DEFAULT_OFF_HOURS_MESSAGE
    for window in config.windows:
        unblock_at = window_unblock_at(when, window)
        if unblock_at is not None:
            return OffHoursStatus(blocked=True, unblock_at=unblock_at, message=message)
    return UNBLOCKED


def check_off_hours(config: OffHoursConfig) -> OffHoursStatus:
    """Evaluate *config* against the current local time."""
    return is_off_hours_blocked_at(datetime.now(), config)
