"""Candidate lattice helpers for the upgrade search."""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from itertools import islice
from typing import List, Sequence

from utils.profiles import as_finite

MAX_SOLAR_CANDIDATES = 50_000
MAX_PRECISION = 6
MIN_PRECISION = 3
BATTERY_COUNT_OPTIONS: tuple[int, ...] = (0, 1, 2)


def _decimal_places(value: float) -> int:
    """Number of decimal digits needed to print ``value`` exactly."""

    try:
        exponent = Decimal(repr(float(value))).normalize().as_tuple().exponent
    except (InvalidOperation, ValueError):
        return 0
    return max(0, -int(exponent)) if isinstance(exponent, int) else 0


def build_solar_candidates(min_kw: float, max_kw: float, step_kw: float) -> List[float]:
    """Return an ascending, de-duplicated list of solar sizes in kW.

    Values are generated on an integer grid scaled by ``10 ** precision`` to
    avoid float drift, where precision is the largest decimal count among the
    three inputs (at least 3, at most 6). ``max_kw`` is always included even
    when it is not a whole number of steps from ``min_kw``. The lattice is
    capped at ``MAX_SOLAR_CANDIDATES`` points including ``max_kw``; only the
    kept points are generated. An empty list means the range
    is invalid (``step_kw <= 0`` or ``max_kw < min_kw``).
    """

    start_kw = as_finite(min_kw, 0.0)
    end_kw = as_finite(max_kw, start_kw)
    step = as_finite(step_kw, 0.0)

    precision = min(
        MAX_PRECISION,
        max(_decimal_places(start_kw), _decimal_places(end_kw), _decimal_places(step), MIN_PRECISION),
    )
    factor = 10 ** precision
    start = int(round(start_kw * factor))
    end = int(round(end_kw * factor))
    increment = int(round(step * factor))
    if increment <= 0 or end < start:
        return []

    # Grid points strictly below the max; the exact max is appended afterwards.
    below_max = range(start, end, increment)
    total = len(below_max) + 1
    if total > MAX_SOLAR_CANDIDATES:
        logging.getLogger(__name__).warning(
            "Solar lattice truncated to %d of %d points.", MAX_SOLAR_CANDIDATES, total
        )

    points = [value / factor for value in islice(below_max, MAX_SOLAR_CANDIDATES - 1)]
    points.append(end / factor)
    return sorted({round(point, precision) for point in points})


def build_battery_candidates(
    base_count: int,
    pinned_count: int | None = None,
    options: Sequence[int] = BATTERY_COUNT_OPTIONS,
) -> List[int]:
    """Battery counts to evaluate; a pinned count is clamped to ``[base, max]``."""

    upper = max(options)
    if pinned_count is None:
        return [count for count in options if count >= base_count]
    return [int(max(base_count, min(upper, int(pinned_count))))]


__all__ = [
    "BATTERY_COUNT_OPTIONS",
    "MAX_SOLAR_CANDIDATES",
    "build_battery_candidates",
    "build_solar_candidates",
]
