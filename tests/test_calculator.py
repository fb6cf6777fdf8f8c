"""Tests for next-execution arithmetic."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from scheduler.calculator import NextExecutionCalculator, compute_next_execution
from scheduler.models import ScheduleConfig, ScheduleType

UTC = timezone.utc


def at(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


# ── Documented scenarios ──────────────────────────────────────────────────────

def test_daily_after_hour_rolls_to_tomorrow():
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=9)
    assert compute_next_execution(cfg, at(2024, 1, 1, 10)) == at(2024, 1, 2, 9)


def test_daily_before_hour_fires_today():
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=9)
    assert compute_next_execution(cfg, at(2024, 1, 1, 8, 59)) == at(2024, 1, 1, 9)


def test_daily_exactly_at_hour_is_not_now():
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=9)
    assert compute_next_execution(cfg, at(2024, 1, 1, 9)) == at(2024, 1, 2, 9)


def test_weekly_wednesday_from_monday():
    # 2024-01-01 is a Monday; 3 = Wednesday counting 0 = Sunday
    cfg = ScheduleConfig(type=ScheduleType.WEEKLY, day_of_week=3, hour=14)
    assert compute_next_execution(cfg, at(2024, 1, 1, 8)) == at(2024, 1, 3, 14)


def test_weekly_sunday_is_sunday():
    cfg = ScheduleConfig(type=ScheduleType.WEEKLY, day_of_week=0, hour=6)
    assert compute_next_execution(cfg, at(2024, 1, 1, 8)) == at(2024, 1, 7, 6)


def test_weekly_defaults_to_monday():
    cfg = ScheduleConfig(type=ScheduleType.WEEKLY, hour=9)
    # Tuesday → next Monday
    assert compute_next_execution(cfg, at(2024, 1, 2, 12)) == at(2024, 1, 8, 9)


def test_weekly_same_day_passed_hour_adds_a_week():
    cfg = ScheduleConfig(type=ScheduleType.WEEKLY, day_of_week=1, hour=9)
    assert compute_next_execution(cfg, at(2024, 1, 1, 10)) == at(2024, 1, 8, 9)


def test_monthly_31_clamps_to_end_of_february():
    cfg = ScheduleConfig(type=ScheduleType.MONTHLY, day_of_month=31, hour=0)
    assert compute_next_execution(cfg, at(2024, 2, 15)) == at(2024, 2, 29)


def test_monthly_31_clamps_in_non_leap_year():
    cfg = ScheduleConfig(type=ScheduleType.MONTHLY, day_of_month=31, hour=0)
    assert compute_next_execution(cfg, at(2023, 2, 15)) == at(2023, 2, 28)


def test_monthly_clamped_day_passed_moves_to_next_month():
    cfg = ScheduleConfig(type=ScheduleType.MONTHLY, day_of_month=31, hour=0)
    assert compute_next_execution(cfg, at(2024, 4, 30, 1)) == at(2024, 5, 31)


def test_monthly_defaults_to_first():
    cfg = ScheduleConfig(type=ScheduleType.MONTHLY, hour=3)
    assert compute_next_execution(cfg, at(2024, 1, 10)) == at(2024, 2, 1, 3)


def test_monthly_december_rolls_year():
    cfg = ScheduleConfig(type=ScheduleType.MONTHLY, day_of_month=5, hour=0)
    assert compute_next_execution(cfg, at(2024, 12, 20)) == at(2025, 1, 5)


def test_quarterly_next_quarter_start():
    cfg = ScheduleConfig(type=ScheduleType.QUARTERLY, hour=8)
    assert compute_next_execution(cfg, at(2024, 2, 10)) == at(2024, 4, 1, 8)


def test_quarterly_before_hour_on_quarter_start():
    cfg = ScheduleConfig(type=ScheduleType.QUARTERLY, hour=8)
    assert compute_next_execution(cfg, at(2024, 7, 1, 7)) == at(2024, 7, 1, 8)


def test_quarterly_q4_rolls_year():
    cfg = ScheduleConfig(type=ScheduleType.QUARTERLY, hour=0)
    assert compute_next_execution(cfg, at(2024, 11, 3)) == at(2025, 1, 1)


def test_unknown_type_fires_at_next_top_of_hour():
    raw = {"type": "hourly", "hour": 0}
    assert compute_next_execution(raw, at(2024, 1, 1, 10, 30)) == at(2024, 1, 1, 11)
    assert compute_next_execution(raw, at(2024, 1, 1, 10)) == at(2024, 1, 1, 11)


def test_accepts_raw_mapping():
    raw = {"type": "daily", "hour": 9}
    assert compute_next_execution(raw, at(2024, 1, 1, 10)) == at(2024, 1, 2, 9)


def test_naive_now_is_treated_as_utc():
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=9)
    assert compute_next_execution(cfg, datetime(2024, 1, 1, 10)) == at(2024, 1, 2, 9)


# ── Timezones ─────────────────────────────────────────────────────────────────

def test_hour_is_wall_clock_in_schedule_timezone():
    # 09:00 in Riyadh (UTC+3) is 06:00 UTC
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=9, timezone="Asia/Riyadh")
    assert compute_next_execution(cfg, at(2024, 1, 1, 5)) == at(2024, 1, 1, 6)
    assert compute_next_execution(cfg, at(2024, 1, 1, 7)) == at(2024, 1, 2, 6)


def test_daily_across_spring_forward_gap():
    # 2024-03-10 02:30 does not exist in New York; result must still be in the future
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=2, timezone="America/New_York")
    now = at(2024, 3, 10, 3)
    nxt = compute_next_execution(cfg, now)
    assert nxt > now
    assert nxt.tzinfo is not None


def test_daily_across_fall_back():
    cfg = ScheduleConfig(type=ScheduleType.DAILY, hour=1, timezone="America/New_York")
    # 2024-11-03 01:00 EDT is 05:00 UTC
    assert compute_next_execution(cfg, at(2024, 11, 3, 4)) == at(2024, 11, 3, 5)


def test_unknown_timezone_rejected():
    with pytest.raises(ValueError):
        ScheduleConfig(type=ScheduleType.DAILY, hour=9, timezone="Mars/Olympus")


# ── Properties ────────────────────────────────────────────────────────────────

_CONFIGS = [
    ScheduleConfig(type=ScheduleType.DAILY, hour=h, timezone=tz)
    for h, tz in itertools.product((0, 9, 23), ("UTC", "Asia/Riyadh", "America/New_York"))
] + [
    ScheduleConfig(type=ScheduleType.WEEKLY, day_of_week=d, hour=h, timezone=tz)
    for d, h, tz in itertools.product(range(7), (0, 14), ("UTC", "Europe/London"))
] + [
    ScheduleConfig(type=ScheduleType.MONTHLY, day_of_month=d, hour=h, timezone=tz)
    for d, h, tz in itertools.product((1, 15, 29, 30, 31), (0, 23), ("UTC", "Australia/Sydney"))
] + [
    ScheduleConfig(type=ScheduleType.QUARTERLY, hour=h, timezone=tz)
    for h, tz in itertools.product((0, 12), ("UTC", "America/New_York"))
]

_NOWS = [
    at(2024, 1, 1) + timedelta(days=d, hours=h, minutes=m)
    for d, h, m in itertools.product(range(0, 366, 17), (0, 2, 9, 23), (0, 30))
]


def test_result_is_always_strictly_after_now():
    for cfg in _CONFIGS:
        for now in _NOWS:
            assert compute_next_execution(cfg, now) > now, (cfg, now)


def test_result_is_deterministic():
    calc = NextExecutionCalculator()
    for cfg in _CONFIGS:
        for now in _NOWS[::5]:
            assert calc.compute(cfg, now) == calc.compute(cfg, now)


def test_result_is_utc():
    for cfg in _CONFIGS:
        assert compute_next_execution(cfg, _NOWS[3]).utcoffset() == timedelta(0)
