"""Tests for off-hours window evaluation."""

from __future__ import annotations

from datetime import datetime

import pytest

from sidemon.off_hours import (
    DEFAULT_OFF_HOURS_MESSAGE,
    OffHoursConfig,
    OffHoursWindow,
    is_off_hours_blocked_at,
    parse_time_of_day,
    window_unblock_at,
)

# 2024-01-01 is a Monday.
MONDAY = datetime(2024, 1, 1)
TUESDAY = datetime(2024, 1, 2)


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


# ---------------------------------------------------------------------------
# parse_time_of_day
# ---------------------------------------------------------------------------


def test_parse_time_of_day():
    assert parse_time_of_day("07:30") == (7, 30)
    assert parse_time_of_day("23:59") == (23, 59)


@pytest.mark.parametrize("value", ["", "7", "7:30:00", "aa:bb", "24:00", "12:60", "-1:00"])
def test_parse_time_of_day_rejects(value):
    with pytest.raises(ValueError):
        parse_time_of_day(value)


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


def test_same_day_window():
    window = OffHoursWindow(start="12:00", end="13:00")
    assert window_unblock_at(_at(MONDAY, 12, 30), window) == _at(MONDAY, 13)
    assert window_unblock_at(_at(MONDAY, 13), window) is None
    assert window_unblock_at(_at(MONDAY, 11, 59), window) is None


def test_overnight_window():
    window = OffHoursWindow(start="22:00", end="07:00")
    assert window_unblock_at(_at(MONDAY, 23), window) == _at(TUESDAY, 7)
    assert window_unblock_at(_at(TUESDAY, 6, 59), window) == _at(TUESDAY, 7)
    assert window_unblock_at(_at(TUESDAY, 12), window) is None


def test_day_restricted_same_day_window():
    window = OffHoursWindow(start="00:00", end="23:59", days=("Saturday", "sunday"))
    assert window_unblock_at(_at(MONDAY, 10), window) is None
    sunday = datetime(2024, 1, 7, 10)
    assert window_unblock_at(sunday, window) == datetime(2024, 1, 7, 23, 59)


def test_day_restricted_overnight_window_uses_start_day():
    window = OffHoursWindow(start="22:00", end="07:00", days=("monday",))
    # Monday evening starts the window; its morning half falls on Tuesday.
    assert window_unblock_at(_at(MONDAY, 23), window) == _at(TUESDAY, 7)
    assert window_unblock_at(_at(TUESDAY, 6), window) == _at(TUESDAY, 7)
    # Monday morning belongs to Sunday's window, which is not listed.
    assert window_unblock_at(_at(MONDAY, 6), window) is None
    assert window_unblock_at(_at(TUESDAY, 23), window) is None


def test_invalid_window_never_blocks():
    assert window_unblock_at(_at(MONDAY, 12), OffHoursWindow(start="noon", end="13:00")) is None


# ---------------------------------------------------------------------------
# Config evaluation
# ---------------------------------------------------------------------------


def test_no_windows_is_unblocked():
    assert not is_off_hours_blocked_at(_at(MONDAY, 3), OffHoursConfig()).blocked


def test_blocked_status_uses_default_message():
    config = OffHoursConfig(windows=(OffHoursWindow(start="00:00", end="08:00"),))
    status = is_off_hours_blocked_at(_at(MONDAY, 3), config)
    assert status.blocked
    assert status.unblock_at == _at(MONDAY, 8)
    assert status.message == DEFAULT_OFF_HOURS_MESSAGE


def test_first_matching_window_wins():
    config = OffHoursConfig(
        message="Go to bed",
        windows=(
            OffHoursWindow(start="bogus", end="08:00"),
            OffHoursWindow(start="02:00", end="04:00"),
            OffHoursWindow(start="00:00", end="08:00"),
        ),
    )
    status = is_off_hours_blocked_at(_at(MONDAY, 3), config)
    assert status.unblock_at == _at(MONDAY, 4)
    assert status.message == "Go to bed"


def test_config_from_mapping_skips_malformed_windows():
    config = OffHoursConfig.from_mapping(
        {
            "message": "Rest",
            "windows": [
                {"start": "22:00", "end": "07:00", "days": "friday"},
                "not a table",
                {"start": "12:00", "end": "13:00"},
            ],
        }
    )
    assert config.message == "Rest"
    assert config.windows == (
        OffHoursWindow(start="22:00", end="07:00", days=("friday",)),
        OffHoursWindow(start="12:00", end="13:00"),
    )
