"""Demand-response overlays: HVAC pre-conditioning and whole-house-fan venting.

Both programs are resolved into one schedule per calendar month before any
day is simulated. In ``auto`` mode the schedule is derived from the site's
representative hourly temperatures; in ``manual`` mode the configured values
are replicated across the year. The per-day plans built here are plain
hourly load deltas the dispatch simulator adds to the base load.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from utils.profiles import clamp
from utils.tou import (
    DAYS_IN_MONTH,
    HOURS_PER_DAY,
    MONTHS_PER_YEAR,
    PEAK_HOURS,
    SEASON_SUMMER,
    SEASON_WINTER,
    build_hour_range,
    hours_in_minute_window,
    month_season,
)

MODE_AUTO = "auto"
MODE_MANUAL = "manual"

BASE_SUMMER_SETPOINT_F = 74.0
BASE_WINTER_SETPOINT_F = 68.0

# Outdoor range in which night venting can replace air conditioning.
WHF_MIN_ELIGIBLE_F = 55.0
WHF_MAX_ELIGIBLE_F = 82.0
WHF_CANDIDATE_BAND: tuple[int, ...] = (18, 19, 20, 21, 22, 23, 0, 1, 2, 3, 4, 5, 6, 7, 8)
WHF_MIN_MONTHLY_ELIGIBLE_HOURS = 45.0
WHF_MIN_COOLING_STRESS = 0.5
WHF_DEFAULT_START_MINUTE = 20 * 60 + 30
WHF_DEFAULT_END_MINUTE = 6 * 60

HA_DEFAULT_PRE_WINDOW = (13, 16)
HA_COOLING_PRE_WINDOW = (12, 16)
HA_HEATING_PRE_WINDOW = (11, 15)

_SORTED_PEAK_HOURS: tuple[int, ...] = tuple(sorted(PEAK_HOURS))


@dataclass(frozen=True)
class HvacShiftConfig:
    """HVAC pre-conditioning ("HA") settings.

    ``success_rate``, ``pre_start_hour``/``pre_end_hour`` and
    ``max_shift_hours_per_day`` are only read in manual mode.
    """

    enabled: bool = False
    mode: str = MODE_AUTO
    summer_setpoint_f: float = BASE_SUMMER_SETPOINT_F
    winter_setpoint_f: float = BASE_WINTER_SETPOINT_F
    max_precool_offset_f: float = 3.0
    max_preheat_offset_f: float = 2.0
    max_peak_relax_offset_f: float = 2.0
    sensitivity_kwh_per_deg_hour: float = 0.6
    success_rate: float = 0.7
    pre_start_hour: int = 12
    pre_end_hour: int = 16
    max_shift_hours_per_day: int = 4
    max_shift_kwh_per_day: float = 6.0


@dataclass(frozen=True)
class WholeHouseFanConfig:
    """Whole-house-fan ("WHF") settings; window and months apply in manual mode."""

    enabled: bool = False
    mode: str = MODE_AUTO
    fan_watts: float = 200.0
    displaced_ac_watts: float = 3500.0
    success_rate: float = 0.85
    start_minute: int = WHF_DEFAULT_START_MINUTE
    end_minute: int = WHF_DEFAULT_END_MINUTE
    active_months: tuple[int, ...] = (4, 5, 6, 7, 8)


@dataclass(frozen=True)
class HaMonthSchedule:
    success_rate: float = 0.0
    pre_start_hour: int = 12
    pre_end_hour: int = 16
    max_shift_hours: int = 0

    @property
    def pre_hours(self) -> List[int]:
        return build_hour_range(self.pre_start_hour, self.pre_end_hour)[: max(0, self.max_shift_hours)]


@dataclass(frozen=True)
class WhfMonthSchedule:
    active: bool = False
    success_rate: float = 0.0
    start_minute: int = 0
    end_minute: int = 0


@dataclass(frozen=True)
class DemandResponseSchedule:
    """Resolved per-month schedules for both programs (12 entries each)."""

    ha: Tuple[HaMonthSchedule, ...] = field(default_factory=lambda: (HaMonthSchedule(),) * MONTHS_PER_YEAR)
    whf: Tuple[WhfMonthSchedule, ...] = field(default_factory=lambda: (WhfMonthSchedule(),) * MONTHS_PER_YEAR)


def _cooling_stress(temps: np.ndarray, summer_setpoint_f: float) -> float:
    return float(np.maximum(0.0, temps - summer_setpoint_f).mean())


def _heating_stress(temps: np.ndarray, winter_setpoint_f: float) -> float:
    return float(np.maximum(0.0, winter_setpoint_f - temps).mean())


def derive_auto_hvac_schedule(
    temp_by_month: np.ndarray,
    summer_setpoint_f: float,
    winter_setpoint_f: float,
) -> List[HaMonthSchedule]:
    """Per-month HVAC success rate and pre-conditioning window from temperatures."""

    schedules: List[HaMonthSchedule] = []
    for month in range(MONTHS_PER_YEAR):
        temps = np.asarray(temp_by_month[month], dtype=float)
        cooling = _cooling_stress(temps, summer_setpoint_f)
        heating = _heating_stress(temps, winter_setpoint_f)
        stress_index = clamp((cooling + heating) / 8.0, 0.0, 1.0)
        success = clamp(0.15 + stress_index * 0.8, 0.15, 0.95)

        if cooling > heating * 1.1:
            start, end = HA_COOLING_PRE_WINDOW
        elif heating > cooling * 1.1:
            start, end = HA_HEATING_PRE_WINDOW
        else:
            start, end = HA_DEFAULT_PRE_WINDOW
        window_hours = max(1, len(build_hour_range(start, end)))
        schedules.append(HaMonthSchedule(success, start, end, window_hours))
    return schedules


def _best_venting_window(temps: np.ndarray, summer_setpoint_f: float) -> Tuple[int, int, int, int]:
    """Return ``(eligible_hours, window_hours, first_hour, last_hour)`` of the best window."""

    eligible = (temps >= WHF_MIN_ELIGIBLE_F) & (temps <= WHF_MAX_ELIGIBLE_F)
    cooling = np.maximum(0.0, temps - summer_setpoint_f)

    best_score = float("-inf")
    best = (0, 1, 20, 5)
    band = WHF_CANDIDATE_BAND
    for start_idx in range(len(band) - 1):
        for end_idx in range(start_idx + 2, len(band) + 1):
            hours = list(band[start_idx:end_idx])
            eligible_hours = int(eligible[hours].sum())
            avg_cooling = float(cooling[hours].sum()) / max(1, len(hours))
            score = eligible_hours * 1.5 + avg_cooling * 0.35
            if score > best_score + 1e-9 or (abs(score - best_score) <= 1e-9 and eligible_hours > best[0]):
                best_score = score
                best = (eligible_hours, len(hours), hours[0], hours[-1])
    return best


def derive_auto_whf_schedule(temp_by_month: np.ndarray, summer_setpoint_f: float) -> List[WhfMonthSchedule]:
    """Per-month venting window, success rate and active flag from temperatures."""

    schedules: List[WhfMonthSchedule] = []
    for month in range(MONTHS_PER_YEAR):
        temps = np.asarray(temp_by_month[month], dtype=float)
        eligible_per_day = int(((temps >= WHF_MIN_ELIGIBLE_F) & (temps <= WHF_MAX_ELIGIBLE_F)).sum())
        monthly_cooling = _cooling_stress(temps, summer_setpoint_f)

        eligible_hours, window_hours, first_hour, last_hour = _best_venting_window(temps, summer_setpoint_f)
        success = clamp(eligible_hours / max(1, window_hours), 0.1, 0.95)
        active = (
            eligible_per_day * DAYS_IN_MONTH[month] >= WHF_MIN_MONTHLY_ELIGIBLE_HOURS
            and monthly_cooling >= WHF_MIN_COOLING_STRESS
        )
        schedules.append(
            WhfMonthSchedule(
                active=active,
                success_rate=success,
                start_minute=first_hour * 60,
                end_minute=((last_hour + 1) % HOURS_PER_DAY) * 60,
            )
        )
    return schedules


def plan_hvac_months(config: HvacShiftConfig, temp_by_month: np.ndarray) -> Tuple[HaMonthSchedule, ...]:
    if not config.enabled:
        return (HaMonthSchedule(),) * MONTHS_PER_YEAR
    if config.mode == MODE_AUTO:
        return tuple(
            derive_auto_hvac_schedule(temp_by_month, config.summer_setpoint_f, config.winter_setpoint_f)
        )
    manual = HaMonthSchedule(
        success_rate=clamp(config.success_rate, 0.0, 1.0),
        pre_start_hour=int(config.pre_start_hour) % HOURS_PER_DAY,
        pre_end_hour=int(config.pre_end_hour) % HOURS_PER_DAY,
        max_shift_hours=int(clamp(int(config.max_shift_hours_per_day), 1, 12)),
    )
    return (manual,) * MONTHS_PER_YEAR


def plan_whf_months(
    config: WholeHouseFanConfig,
    temp_by_month: np.ndarray,
    summer_setpoint_f: float = BASE_SUMMER_SETPOINT_F,
) -> Tuple[WhfMonthSchedule, ...]:
    if not config.enabled:
        return (WhfMonthSchedule(),) * MONTHS_PER_YEAR
    if config.mode == MODE_AUTO:
        return tuple(derive_auto_whf_schedule(temp_by_month, summer_setpoint_f))
    success = clamp(config.success_rate, 0.0, 1.0)
    active_months = set(config.active_months)
    return tuple(
        WhfMonthSchedule(
            active=month in active_months,
            success_rate=success,
            start_minute=int(config.start_minute) % 1440,
            end_minute=int(config.end_minute) % 1440,
        )
        for month in range(MONTHS_PER_YEAR)
    )


def plan_demand_response(
    hvac: HvacShiftConfig,
    whf: WholeHouseFanConfig,
    temp_by_month: np.ndarray,
) -> DemandResponseSchedule:
    """Resolve both programs into their 12 monthly schedules."""

    temps = np.asarray(temp_by_month, dtype=float)
    if temps.shape != (MONTHS_PER_YEAR, HOURS_PER_DAY):
        raise ValueError("Temperature profile must be a 12x24 grid.")
    return DemandResponseSchedule(
        ha=plan_hvac_months(hvac, temps),
        whf=plan_whf_months(whf, temps, hvac.summer_setpoint_f),
    )


@dataclass
class HvacShiftPlan:
    pre_by_hour: np.ndarray
    post_by_hour: np.ndarray
    capacity_kwh: float = 0.0
    scheduled_kwh: float = 0.0
    executed_kwh: float = 0.0
    shift_to_pre_kwh: float = 0.0
    shift_to_post_kwh: float = 0.0
    peak_import_avoided_kwh: float = 0.0

    @classmethod
    def empty(cls) -> "HvacShiftPlan":
        return cls(np.zeros(HOURS_PER_DAY), np.zeros(HOURS_PER_DAY))

    @property
    def load_delta(self) -> np.ndarray:
        return self.pre_by_hour + self.post_by_hour


def season_daily_hvac_shift_capacity(config: HvacShiftConfig, month_index: int, pre_window_hours: int) -> float:
    """Daily shiftable HVAC energy (kWh) for a month's season and pre-window length."""

    sensitivity = config.sensitivity_kwh_per_deg_hour
    summer_pre = config.max_precool_offset_f * sensitivity * pre_window_hours
    winter_pre = config.max_preheat_offset_f * sensitivity * pre_window_hours
    relax = config.max_peak_relax_offset_f * sensitivity * len(PEAK_HOURS)

    season = month_season(month_index)
    if season == SEASON_SUMMER:
        pre = summer_pre
    elif season == SEASON_WINTER:
        pre = winter_pre
    else:
        pre = 0.5 * summer_pre + 0.5 * winter_pre
    return max(0.0, min(config.max_shift_kwh_per_day, pre + relax))


def _allocate(total_kwh: float, hours: Sequence[int], load_shape: np.ndarray) -> np.ndarray:
    out = np.zeros(HOURS_PER_DAY)
    if not hours:
        return out
    idx = list(hours)
    weights = np.asarray(load_shape, dtype=float)[idx]
    weight_total = float(weights.sum())
    if weight_total <= 0:
        return out
    np.add.at(out, idx, total_kwh * weights / weight_total)
    return out


def build_hvac_shift_plan(
    config: HvacShiftConfig,
    month_index: int,
    month_schedule: HaMonthSchedule,
    load_shape: np.ndarray,
) -> HvacShiftPlan:
    """Move executed HVAC energy out of the peak window into the pre-window."""

    if not config.enabled or month_schedule.success_rate <= 0:
        return HvacShiftPlan.empty()
    pre_hours = month_schedule.pre_hours
    if not pre_hours:
        return HvacShiftPlan.empty()
    capacity = season_daily_hvac_shift_capacity(config, month_index, len(pre_hours))
    if capacity <= 0:
        return HvacShiftPlan.empty()

    executed = capacity * clamp(month_schedule.success_rate, 0.0, 1.0)
    post = -_allocate(executed, _SORTED_PEAK_HOURS, load_shape)
    pre = _allocate(executed, pre_hours, load_shape)
    to_post = float(np.abs(post).sum())
    return HvacShiftPlan(
        pre_by_hour=pre,
        post_by_hour=post,
        capacity_kwh=capacity,
        scheduled_kwh=capacity,
        executed_kwh=executed,
        shift_to_pre_kwh=float(pre.sum()),
        shift_to_post_kwh=to_post,
        peak_import_avoided_kwh=to_post,
    )


@dataclass
class WholeHouseFanPlan:
    fan_by_hour: np.ndarray
    displaced_by_hour: np.ndarray
    load_delta_by_hour: np.ndarray
    fan_kwh: float = 0.0
    displaced_ac_kwh: float = 0.0
    net_reduction_kwh: float = 0.0
    active_hours: int = 0

    @classmethod
    def empty(cls) -> "WholeHouseFanPlan":
        return cls(np.zeros(HOURS_PER_DAY), np.zeros(HOURS_PER_DAY), np.zeros(HOURS_PER_DAY))


def build_whole_house_fan_plan(config: WholeHouseFanConfig, month_schedule: WhfMonthSchedule) -> WholeHouseFanPlan:
    """Hourly fan energy and displaced AC load for one representative day."""

    if not config.enabled or not month_schedule.active or month_schedule.success_rate <= 0:
        return WholeHouseFanPlan.empty()

    success = clamp(month_schedule.success_rate, 0.0, 1.0)
    fan_kwh = config.fan_watts / 1000.0 * success
    displaced_kwh = config.displaced_ac_watts / 1000.0 * success
    net_reduction = max(0.0, displaced_kwh - fan_kwh)

    plan = WholeHouseFanPlan.empty()
    for hour in hours_in_minute_window(month_schedule.start_minute, month_schedule.end_minute):
        plan.fan_by_hour[hour] = fan_kwh
        plan.displaced_by_hour[hour] = displaced_kwh
        plan.load_delta_by_hour[hour] = -net_reduction
        plan.active_hours += 1

    plan.fan_kwh = float(plan.fan_by_hour.sum())
    plan.displaced_ac_kwh = float(plan.displaced_by_hour.sum())
    plan.net_reduction_kwh = net_reduction * plan.active_hours
    return plan
