"""Unit tests for time point arithmetic."""

import pytest

from kpi_engine.application.services.time_modifiers import calculate_time, expand_to_month_start


@pytest.mark.parametrize("modifier", [None, "", "current"])
def test_current_keeps_time_point(modifier):
    assert calculate_time("20251201", modifier) == "20251201"


def test_last_year():
    assert calculate_time("20251201", "lastYear") == "20241201"


def test_last_year_on_leap_day_clamps_to_feb_28():
    assert calculate_time("20240229", "lastYear") == "20230228"


def test_last_cycle_shifts_one_month():
    assert calculate_time("20251215", "lastCycle") == "20251115"


def test_last_cycle_crosses_year_boundary():
    assert calculate_time("20250115", "lastCycle") == "20241215"


def test_last_cycle_clamps_to_month_end():
    """Test March 31 moves to the last day of February."""
    assert calculate_time("20250331", "lastCycle") == "20250228"
    assert calculate_time("20240331", "lastCycle") == "20240229"


def test_last_month_matches_last_cycle():
    assert calculate_time("20250710", "lastMonth") == calculate_time("20250710", "lastCycle")


def test_unknown_modifier_returns_time_point_unchanged():
    assert calculate_time("20251201", "lastDecade") == "20251201"


def test_non_daily_time_point_returned_unchanged():
    assert calculate_time("202512", "lastYear") == "202512"


def test_expand_to_month_start():
    assert expand_to_month_start("20251203") == ["20251201", "20251202", "20251203"]


def test_expand_first_of_month():
    assert expand_to_month_start("20250201") == ["20250201"]


def test_expand_non_daily_time_point():
    assert expand_to_month_start("202512") == ["202512"]
