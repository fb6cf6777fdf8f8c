"""Next-execution arithmetic for recurring export schedules.

All wall-clock reasoning happens in the schedule's own timezone; results are
returned as aware UTC datetimes.  Every result is strictly later than ``now``.

Monthly schedules whose ``day_of_month`` does not exist in a given month are
clamped to that month's last day (31 → Feb 29 in 2024, Apr 30, ...).
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping
from zoneinfo import ZoneInfo

from scheduler.models import ScheduleConfig, ScheduleType

_DEFAULT_WEEKDAY = 1        # Monday, counting 0 = Sunday
_DEFAULT_DAY_OF_MONTH = 1


def _at(day: date, hour: int, tz: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=tz)


def _clamped(year: int, month: int, day: int) -> date:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _fields(config: ScheduleConfig | Mapping[str, Any]) -> tuple[str, int, int | None, int | None, str]:
    if isinstance(config, ScheduleConfig):
        return (config.type.value, config.hour, config.day_of_week,
                config.day_of_month, config.timezone)
    stype = config.get("type")
    if isinstance(stype, ScheduleType):
        stype = stype.value
    return (
        str(stype),
        int(config.get("hour", 0)),
        config.get("day_of_week"),
        config.get("day_of_month"),
        config.get("timezone") or "UTC",
    )


def compute_next_execution(
    config: ScheduleConfig | Mapping[str, Any],
    now: datetime,
) -> datetime:
    """Return the first firing instant of *config* strictly after *now*.

    Naive ``now`` values are taken to be UTC.  Unknown schedule types fire at
    the top of the next hour.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    stype, hour, day_of_week, day_of_month, tz_name = _fields(config)
    tz = ZoneInfo(tz_name)
    today = now.astimezone(tz).date()

    if stype == ScheduleType.DAILY.value:
        candidate = _at(today, hour, tz)
        if candidate <= now:
            candidate = _at(today + timedelta(days=1), hour, tz)

    elif stype == ScheduleType.WEEKLY.value:
        target = _DEFAULT_WEEKDAY if day_of_week is None else day_of_week
        current = (today.weekday() + 1) % 7          # Python: Monday = 0
        day = today + timedelta(days=(target - current) % 7)
        candidate = _at(day, hour, tz)
        if candidate <= now:
            candidate = _at(day + timedelta(days=7), hour, tz)

    elif stype == ScheduleType.MONTHLY.value:
        dom = day_of_month or _DEFAULT_DAY_OF_MONTH
        candidate = _at(_clamped(today.year, today.month, dom), hour, tz)
        if candidate <= now:
            year, month = _add_months(today.year, today.month, 1)
            candidate = _at(_clamped(year, month, dom), hour, tz)

    elif stype == ScheduleType.QUARTERLY.value:
        start_month = (today.month - 1) // 3 * 3 + 1
        candidate = _at(date(today.year, start_month, 1), hour, tz)
        if candidate <= now:
            year, month = _add_months(today.year, start_month, 3)
            candidate = _at(date(year, month, 1), hour, tz)

    else:
        top = now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        candidate = top + timedelta(hours=1)

    return candidate.astimezone(timezone.utc)


class NextExecutionCalculator:
    """Injectable wrapper around :func:`compute_next_execution`."""

    def compute(self, config: ScheduleConfig | Mapping[str, Any], now: datetime) -> datetime:
        return compute_next_execution(config, now)
