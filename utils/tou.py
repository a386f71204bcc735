"""Time-of-use calendar helpers shared by the planner and dispatch modules."""
from __future__ import annotations

import calendar
from typing import List

HOURS_PER_DAY = 24
MONTHS_PER_YEAR = 12

# Non-leap calendar used for representative-day scaling.
DAYS_IN_MONTH: tuple[int, ...] = tuple(
    calendar.monthrange(2019, month)[1] for month in range(1, MONTHS_PER_YEAR + 1)
)
MONTH_NAMES: tuple[str, ...] = tuple(calendar.month_abbr[month] for month in range(1, 13))

PEAK_HOURS: frozenset[int] = frozenset(range(16, 21))
POST_PEAK_HOURS: frozenset[int] = frozenset((21, 22, 23))

# 0-indexed months: May-Sep summer, Nov-Feb winter, everything else shoulder.
SUMMER_MONTHS: frozenset[int] = frozenset((4, 5, 6, 7, 8))
WINTER_MONTHS: frozenset[int] = frozenset((10, 11, 0, 1))

SEASON_SUMMER = "summer"
SEASON_WINTER = "winter"
SEASON_SHOULDER = "shoulder"


def is_peak_hour(hour: int) -> bool:
    return hour in PEAK_HOURS


def month_season(month_index: int) -> str:
    """Return ``summer``, ``winter`` or ``shoulder`` for a 0-indexed month."""

    if month_index in SUMMER_MONTHS:
        return SEASON_SUMMER
    if month_index in WINTER_MONTHS:
        return SEASON_WINTER
    return SEASON_SHOULDER


def normalize_hour(value: float, fallback: int = 0) -> int:
    """Coerce ``value`` onto the 0-23 hour clock, wrapping negatives."""

    try:
        hour = int(round(float(value)))
    except (TypeError, ValueError):
        return fallback
    return hour % HOURS_PER_DAY


def build_hour_range(start_hour: int, end_hour: int, max_hours: int = HOURS_PER_DAY) -> List[int]:
    """Return the hours from ``start_hour`` up to (excluding) ``end_hour``.

    Windows wrap past midnight. ``start_hour == end_hour`` yields an empty
    list. At most ``max_hours`` entries are returned.
    """

    start = normalize_hour(start_hour)
    end = normalize_hour(end_hour)
    limit = max(0, min(HOURS_PER_DAY, int(max_hours)))
    hours: List[int] = []
    cursor = start
    while cursor != end and len(hours) < limit:
        hours.append(cursor)
        cursor = (cursor + 1) % HOURS_PER_DAY
    return hours


def minute_in_window(minute_of_day: float, start_minute: int, end_minute: int) -> bool:
    """Return True when ``minute_of_day`` lies in ``[start, end)``.

    Windows may wrap past midnight; ``start == end`` covers the whole day.
    """

    minute = float(minute_of_day) % 1440.0
    start = int(start_minute) % 1440
    end = int(end_minute) % 1440
    if start == end:
        return True
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


def hours_in_minute_window(start_minute: int, end_minute: int) -> List[int]:
    """Hours whose midpoint falls inside a minute-of-day window."""

    return [hour for hour in range(HOURS_PER_DAY) if minute_in_window(hour * 60 + 30, start_minute, end_minute)]
