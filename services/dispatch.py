"""Hourly battery dispatch for one representative day of a month."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Dict

import numpy as np

from services.demand_response import (
    HaMonthSchedule,
    HvacShiftConfig,
    HvacShiftPlan,
    WhfMonthSchedule,
    WholeHouseFanConfig,
    WholeHouseFanPlan,
    build_hvac_shift_plan,
    build_whole_house_fan_plan,
)
from utils.profiles import clamp
from utils.tou import HOURS_PER_DAY, PEAK_HOURS, POST_PEAK_HOURS, is_peak_hour

DISPATCH_SELF_CONSUMPTION_ALWAYS = "self_consumption_always"
DISPATCH_PEAK_THEN_POSTPEAK = "self_consumption_peak_then_postpeak"
DISPATCH_PEAK_ONLY = "self_consumption_peak_only"
DISPATCH_MODES = (DISPATCH_SELF_CONSUMPTION_ALWAYS, DISPATCH_PEAK_THEN_POSTPEAK, DISPATCH_PEAK_ONLY)

BATTERY_USABLE_KWH = 13.5 * 0.9
BATTERY_AC_KW = 11.5
INITIAL_SOC_FRACTION = 0.5
MAX_RESERVE_PCT = 0.95
SOLAR_TO_HOME_EFFICIENCY_RANGE = (0.8, 1.0)
ENERGY_EPS = 1e-6


def discharge_allowed(mode: str, hour: int) -> bool:
    """Return True when ``mode`` lets the battery serve load at ``hour``."""

    if mode == DISPATCH_SELF_CONSUMPTION_ALWAYS:
        return True
    if mode == DISPATCH_PEAK_THEN_POSTPEAK:
        return is_peak_hour(hour) or hour in POST_PEAK_HOURS
    if mode == DISPATCH_PEAK_ONLY:
        return is_peak_hour(hour)
    raise ValueError(f"Unknown dispatch mode '{mode}'. Expected one of {DISPATCH_MODES}.")


@dataclass(frozen=True, eq=False)
class DayInput:
    """Everything needed to simulate one representative day.

    ``load_shape`` and ``solar_shape`` are 24-hour fractions of the day's
    energy. ``reserve_pct`` is the month's SoC floor as a fraction of usable
    capacity.
    """

    month_index: int
    day_home_load_kwh: float
    day_solar_kwh: float
    load_shape: np.ndarray
    solar_shape: np.ndarray
    battery_count: int = 0
    usable_kwh_per_battery: float = BATTERY_USABLE_KWH
    cycles_per_day: float = 0.85
    round_trip_efficiency: float = 0.9
    solar_to_home_efficiency: float = 0.975
    ac_kw_per_battery: float = BATTERY_AC_KW
    dispatch_mode: str = DISPATCH_PEAK_THEN_POSTPEAK
    reserve_pct: float = 0.2
    hvac: HvacShiftConfig = field(default_factory=HvacShiftConfig)
    ha_month: HaMonthSchedule = field(default_factory=HaMonthSchedule)
    whf: WholeHouseFanConfig = field(default_factory=WholeHouseFanConfig)
    whf_month: WhfMonthSchedule = field(default_factory=WhfMonthSchedule)

    @property
    def battery_capacity_kwh(self) -> float:
        return max(0, self.battery_count) * max(0.0, self.usable_kwh_per_battery)

    @property
    def max_ac_output_kwh(self) -> float:
        """Per-hour solar ceiling imposed by the battery inverters."""

        if self.battery_count >= 1:
            return self.battery_count * self.ac_kw_per_battery
        return math.inf


@dataclass
class DayHourlyLog:
    hour: np.ndarray
    load_kwh: np.ndarray
    solar_raw_kwh: np.ndarray
    clipped_kwh: np.ndarray
    direct_solar_to_load_kwh: np.ndarray
    direct_solar_dc_kwh: np.ndarray
    charge_input_kwh: np.ndarray
    charge_stored_kwh: np.ndarray
    battery_to_load_kwh: np.ndarray
    export_dc_kwh: np.ndarray
    export_kwh: np.ndarray
    import_kwh: np.ndarray
    soc_kwh: np.ndarray

    @classmethod
    def zeros(cls) -> "DayHourlyLog":
        names = [f.name for f in fields(cls)]
        values = {name: np.zeros(HOURS_PER_DAY) for name in names}
        values["hour"] = np.arange(HOURS_PER_DAY)
        return cls(**values)


@dataclass
class DayResult:
    """Daily tallies plus the hourly log they were reduced from."""

    import_peak_kwh: float
    import_off_kwh: float
    export_peak_kwh: float
    export_off_kwh: float
    before_import_peak_kwh: float
    before_import_off_kwh: float
    direct_solar_to_load_kwh: float
    solar_to_battery_input_kwh: float
    solar_to_battery_stored_kwh: float
    battery_to_load_kwh: float
    battery_to_load_peak_kwh: float
    battery_to_load_post_peak_kwh: float
    battery_reserve_hits: int
    min_soc_kwh: float
    solar_generation_kwh: float
    clipped_solar_kwh: float
    hvac_plan: HvacShiftPlan
    whf_plan: WholeHouseFanPlan
    hourly: DayHourlyLog

    def totals(self) -> Dict[str, float]:
        """Scalar tallies, excluding the hourly log and plans."""

        skip = {"hvac_plan", "whf_plan", "hourly"}
        return {f.name: float(getattr(self, f.name)) for f in fields(self) if f.name not in skip}


def simulate_representative_day(day: DayInput) -> DayResult:
    """Run 24 hourly dispatch steps for ``day``.

    Each hour serves load from solar first, charges the battery from the
    remaining solar, discharges to the remaining load when the dispatch mode
    allows it, exports surplus solar and imports the rest. The battery starts
    at half of its usable capacity and every representative day is simulated
    independently. The reserve floor only limits discharge, so a day that
    starts below it holds until solar charging lifts the SoC.
    """

    load_shape = np.asarray(day.load_shape, dtype=float)
    solar_shape = np.asarray(day.solar_shape, dtype=float)
    if load_shape.shape != (HOURS_PER_DAY,) or solar_shape.shape != (HOURS_PER_DAY,):
        raise ValueError("Load and solar shapes must have 24 hourly entries.")
    if day.dispatch_mode not in DISPATCH_MODES:
        raise ValueError(f"Unknown dispatch mode '{day.dispatch_mode}'. Expected one of {DISPATCH_MODES}.")

    capacity = day.battery_capacity_kwh
    rate_cap = capacity * max(0.0, day.cycles_per_day) / HOURS_PER_DAY if capacity > 0 else 0.0
    rte = clamp(day.round_trip_efficiency, 1e-6, 1.0)
    solar_eff = clamp(day.solar_to_home_efficiency or 1.0, *SOLAR_TO_HOME_EFFICIENCY_RANGE)
    soc_min = capacity * clamp(day.reserve_pct, 0.0, MAX_RESERVE_PCT)
    solar_cap = day.max_ac_output_kwh

    hvac_plan = build_hvac_shift_plan(day.hvac, day.month_index, day.ha_month, load_shape)
    whf_plan = build_whole_house_fan_plan(day.whf, day.whf_month)
    load_delta = hvac_plan.load_delta + whf_plan.load_delta_by_hour

    log = DayHourlyLog.zeros()
    soc = capacity * INITIAL_SOC_FRACTION
    reserve_hits = 0

    for hour in range(HOURS_PER_DAY):
        hour_load = max(0.0, day.day_home_load_kwh * load_shape[hour] + load_delta[hour])
        solar_raw = max(0.0, day.day_solar_kwh * solar_shape[hour])
        solar = min(solar_raw, solar_cap)
        log.load_kwh[hour] = hour_load
        log.solar_raw_kwh[hour] = solar_raw
        log.clipped_kwh[hour] = solar_raw - solar

        load_remaining = hour_load
        solar_remaining = solar

        direct = min(load_remaining, solar_remaining * solar_eff)
        if direct > 0:
            direct_dc = direct / solar_eff
            load_remaining -= direct
            solar_remaining = max(0.0, solar_remaining - direct_dc)
            log.direct_solar_to_load_kwh[hour] = direct
            log.direct_solar_dc_kwh[hour] = direct_dc

        if capacity > 0 and solar_remaining > 0:
            headroom = max(0.0, capacity - soc)
            charge_input = min(solar_remaining, rate_cap, headroom / rte)
            if charge_input > 0:
                stored = charge_input * rte
                soc = min(capacity, soc + stored)
                solar_remaining -= charge_input
                log.charge_input_kwh[hour] = charge_input
                log.charge_stored_kwh[hour] = stored

        if capacity > 0 and load_remaining > 0 and discharge_allowed(day.dispatch_mode, hour):
            discharge = min(rate_cap, max(0.0, soc - soc_min), load_remaining)
            if discharge > 0:
                soc -= discharge
                load_remaining -= discharge
                log.battery_to_load_kwh[hour] = discharge

        if capacity > 0 and soc - soc_min <= ENERGY_EPS and load_remaining > ENERGY_EPS:
            reserve_hits += 1

        log.export_dc_kwh[hour] = solar_remaining
        log.export_kwh[hour] = solar_remaining * solar_eff
        log.import_kwh[hour] = max(0.0, load_remaining)
        log.soc_kwh[hour] = soc

    peak = np.isin(log.hour, sorted(PEAK_HOURS))
    post_peak = np.isin(log.hour, sorted(POST_PEAK_HOURS))
    return DayResult(
        import_peak_kwh=float(log.import_kwh[peak].sum()),
        import_off_kwh=float(log.import_kwh[~peak].sum()),
        export_peak_kwh=float(log.export_kwh[peak].sum()),
        export_off_kwh=float(log.export_kwh[~peak].sum()),
        before_import_peak_kwh=float(log.load_kwh[peak].sum()),
        before_import_off_kwh=float(log.load_kwh[~peak].sum()),
        direct_solar_to_load_kwh=float(log.direct_solar_to_load_kwh.sum()),
        solar_to_battery_input_kwh=float(log.charge_input_kwh.sum()),
        solar_to_battery_stored_kwh=float(log.charge_stored_kwh.sum()),
        battery_to_load_kwh=float(log.battery_to_load_kwh.sum()),
        battery_to_load_peak_kwh=float(log.battery_to_load_kwh[peak].sum()),
        battery_to_load_post_peak_kwh=float(log.battery_to_load_kwh[post_peak].sum()),
        battery_reserve_hits=reserve_hits,
        min_soc_kwh=soc_min,
        solar_generation_kwh=float((log.solar_raw_kwh - log.clipped_kwh).sum()),
        clipped_solar_kwh=float(log.clipped_kwh.sum()),
        hvac_plan=hvac_plan,
        whf_plan=whf_plan,
        hourly=log,
    )
