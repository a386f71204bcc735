"""Shared helpers for profiles, tariffs, candidate grids and cash-flow math."""

from utils.economics import ProjectionAssumptions, mortgage_payment
from utils.profiles import as_finite, build_hourly_load_shape, clamp, normalize_profile
from utils.sweeps import build_battery_candidates, build_solar_candidates
from utils.tou import DAYS_IN_MONTH, PEAK_HOURS, POST_PEAK_HOURS, month_season

__all__ = [
    "ProjectionAssumptions",
    "mortgage_payment",
    "as_finite",
    "build_hourly_load_shape",
    "clamp",
    "normalize_profile",
    "build_battery_candidates",
    "build_solar_candidates",
    "DAYS_IN_MONTH",
    "PEAK_HOURS",
    "POST_PEAK_HOURS",
    "month_season",
]
