"""Profile normalisation and default load/solar shapes."""
from __future__ import annotations

import math
from typing import Any, Sequence

import numpy as np

from utils.tou import HOURS_PER_DAY, PEAK_HOURS

# Relative monthly weights; normalised before use.
DEFAULT_LOAD_PROFILE_RAW: tuple[float, ...] = (
    1.02, 0.95, 0.91, 0.82, 0.79, 0.83, 0.96, 1.07, 0.96, 0.89, 0.91, 0.99,
)
DEFAULT_SOLAR_PROFILE_RAW: tuple[float, ...] = (
    0.58, 0.66, 0.86, 1.02, 1.12, 1.18, 1.16, 1.08, 0.98, 0.83, 0.64, 0.53,
)
# Typical residential weekday shape with an evening ramp into the peak window.
BASE_LOAD_HOURLY_RAW: tuple[float, ...] = (
    0.021, 0.019, 0.018, 0.018, 0.018, 0.021, 0.028, 0.037,
    0.043, 0.045, 0.043, 0.041, 0.040, 0.039, 0.040, 0.044,
    0.054, 0.066, 0.074, 0.078, 0.070, 0.056, 0.042, 0.031,
)
DEFAULT_PEAK_SHARE = 0.4
MIN_PEAK_SHARE = 0.05
MAX_PEAK_SHARE = 0.95


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def as_finite(value: Any, fallback: float) -> float:
    """Return ``value`` as a float, or ``fallback`` when missing or non-finite."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return float(fallback)
    if not math.isfinite(number):
        return float(fallback)
    return number


def normalize_profile(values: Sequence[float]) -> np.ndarray:
    """Scale ``values`` so they sum to one.

    When the total is not finite or not positive the uniform profile
    ``1/n`` is returned instead, so callers never divide by zero downstream.
    """

    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        return arr
    total = float(arr.sum())
    if not math.isfinite(total) or total <= 0:
        return np.full(arr.size, 1.0 / arr.size)
    return arr / total


def peak_share_of(shape: Sequence[float]) -> float:
    """Fraction of ``shape``'s total that falls in the peak window."""

    arr = np.asarray(shape, dtype=float)
    total = float(arr.sum())
    return float(arr[sorted(PEAK_HOURS)].sum() / total) if total > 0 else 0.0


def build_hourly_load_shape(
    peak_share: float = DEFAULT_PEAK_SHARE,
    base_shape: Sequence[float] = BASE_LOAD_HOURLY_RAW,
) -> np.ndarray:
    """Rescale ``base_shape`` so the peak window carries ``peak_share`` of the day.

    The share is clamped to ``[0.05, 0.95]``. A base shape whose own peak or
    off-peak share is zero cannot be rescaled and is returned normalised.
    """

    base = normalize_profile(base_shape)
    if base.size != HOURS_PER_DAY:
        raise ValueError("Hourly load shape must have 24 entries.")

    target = clamp(as_finite(peak_share, DEFAULT_PEAK_SHARE), MIN_PEAK_SHARE, MAX_PEAK_SHARE)
    base_peak = peak_share_of(base)
    if base_peak <= 0 or base_peak >= 1.0:
        return base

    peak_mask = np.zeros(HOURS_PER_DAY, dtype=bool)
    peak_mask[sorted(PEAK_HOURS)] = True
    scaled = np.where(peak_mask, base * (target / base_peak), base * ((1.0 - target) / (1.0 - base_peak)))
    return normalize_profile(scaled)


def readonly(values: Any) -> np.ndarray:
    """Return a float copy of ``values`` with writes disabled."""

    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


__all__ = [
    "BASE_LOAD_HOURLY_RAW",
    "DEFAULT_LOAD_PROFILE_RAW",
    "DEFAULT_PEAK_SHARE",
    "DEFAULT_SOLAR_PROFILE_RAW",
    "as_finite",
    "build_hourly_load_shape",
    "clamp",
    "normalize_profile",
    "peak_share_of",
    "readonly",
]
