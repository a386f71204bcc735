import numpy as np
import pytest

from services.climate import build_synthetic_solar_hourly_shape
from services.demand_response import HaMonthSchedule, HvacShiftConfig, WhfMonthSchedule, WholeHouseFanConfig
from services.dispatch import (
    BATTERY_USABLE_KWH,
    DISPATCH_PEAK_ONLY,
    DISPATCH_SELF_CONSUMPTION_ALWAYS,
    DayInput,
    discharge_allowed,
    simulate_representative_day,
)
from utils.profiles import build_hourly_load_shape

EPS = 1e-6


def _day(**overrides) -> DayInput:
    params = dict(
        month_index=6,
        day_home_load_kwh=30.0,
        day_solar_kwh=40.0,
        load_shape=build_hourly_load_shape(),
        solar_shape=build_synthetic_solar_hourly_shape(6),
        battery_count=2,
        reserve_pct=0.2,
    )
    params.update(overrides)
    return DayInput(**params)


def _assert_hourly_invariants(day: DayInput) -> None:
    result = simulate_representative_day(day)
    log = result.hourly
    capacity = day.battery_capacity_kwh
    floor = capacity * day.reserve_pct
    start = capacity * 0.5

    assert np.allclose(log.load_kwh, log.direct_solar_to_load_kwh + log.battery_to_load_kwh + log.import_kwh, atol=1e-9)
    assert np.allclose(
        log.solar_raw_kwh,
        log.direct_solar_dc_kwh + log.charge_input_kwh + log.export_dc_kwh + log.clipped_kwh,
        atol=1e-9,
    )
    assert np.all(log.soc_kwh >= min(floor, start) - EPS)
    assert np.all(log.soc_kwh[log.battery_to_load_kwh > 0] >= floor - EPS)
    assert np.all(log.soc_kwh <= capacity + EPS)
    assert np.all(log.import_kwh >= 0)
    assert np.all(log.export_kwh >= 0)


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"battery_count": 0},
        {"battery_count": 1, "day_solar_kwh": 150.0},
        {"dispatch_mode": DISPATCH_SELF_CONSUMPTION_ALWAYS, "day_solar_kwh": 5.0},
        {"dispatch_mode": DISPATCH_PEAK_ONLY, "reserve_pct": 0.95},
        {
            "hvac": HvacShiftConfig(enabled=True),
            "ha_month": HaMonthSchedule(success_rate=0.9, pre_start_hour=12, pre_end_hour=16, max_shift_hours=4),
            "whf": WholeHouseFanConfig(enabled=True),
            "whf_month": WhfMonthSchedule(active=True, success_rate=0.9, start_minute=1230, end_minute=360),
        },
    ],
)
def test_hourly_energy_balance(overrides) -> None:
    _assert_hourly_invariants(_day(**overrides))


def test_no_battery_no_solar_imports_everything() -> None:
    result = simulate_representative_day(_day(battery_count=0, day_solar_kwh=0.0))
    shape = build_hourly_load_shape()

    assert result.import_peak_kwh + result.import_off_kwh == pytest.approx(30.0)
    assert result.import_peak_kwh == pytest.approx(30.0 * shape[16:21].sum())
    assert result.export_peak_kwh + result.export_off_kwh == 0.0
    assert result.battery_to_load_kwh == 0.0
    assert result.battery_reserve_hits == 0


def test_surplus_solar_is_exported_at_ac_value() -> None:
    result = simulate_representative_day(_day(battery_count=0, day_home_load_kwh=0.0, day_solar_kwh=10.0))

    assert result.export_off_kwh + result.export_peak_kwh == pytest.approx(10.0 * 0.975)
    assert result.hourly.export_dc_kwh.sum() == pytest.approx(10.0)


def test_inverter_limit_clips_solar_only_with_batteries() -> None:
    clipped = simulate_representative_day(_day(battery_count=1, day_solar_kwh=150.0))
    unclipped = simulate_representative_day(_day(battery_count=0, day_solar_kwh=150.0))

    assert clipped.clipped_solar_kwh > 0
    assert clipped.hourly.solar_raw_kwh.max() > 11.5
    assert np.all(clipped.hourly.solar_raw_kwh - clipped.hourly.clipped_kwh <= 11.5 + EPS)
    assert unclipped.clipped_solar_kwh == 0.0
    assert unclipped.solar_generation_kwh == pytest.approx(150.0)


def test_peak_only_mode_discharges_in_peak_hours() -> None:
    result = simulate_representative_day(_day(dispatch_mode=DISPATCH_PEAK_ONLY))
    discharge = result.hourly.battery_to_load_kwh
    off_peak = [h for h in range(24) if h not in range(16, 21)]

    assert discharge[16:21].sum() > 0
    assert discharge[off_peak].sum() == 0.0
    assert result.battery_to_load_post_peak_kwh == 0.0


def test_battery_drains_to_reserve_and_counts_hits() -> None:
    day = _day(
        battery_count=1,
        day_home_load_kwh=200.0,
        day_solar_kwh=0.0,
        dispatch_mode=DISPATCH_SELF_CONSUMPTION_ALWAYS,
        cycles_per_day=24.0,
    )
    result = simulate_representative_day(day)

    assert result.min_soc_kwh == pytest.approx(BATTERY_USABLE_KWH * 0.2)
    assert result.hourly.soc_kwh[-1] == pytest.approx(BATTERY_USABLE_KWH * 0.2)
    assert result.battery_to_load_kwh == pytest.approx(BATTERY_USABLE_KWH * 0.3)
    assert result.battery_reserve_hits > 0


def test_soc_starts_at_half_capacity_even_with_high_reserve() -> None:
    day = _day(battery_count=1, day_home_load_kwh=0.0, day_solar_kwh=0.0, reserve_pct=0.8)
    result = simulate_representative_day(day)
    assert result.hourly.soc_kwh[0] == pytest.approx(BATTERY_USABLE_KWH * 0.5)
    assert result.hourly.soc_kwh[-1] == pytest.approx(BATTERY_USABLE_KWH * 0.5)


def test_battery_below_reserve_never_discharges() -> None:
    day = _day(
        battery_count=1,
        day_home_load_kwh=30.0,
        day_solar_kwh=0.0,
        reserve_pct=0.8,
        dispatch_mode=DISPATCH_SELF_CONSUMPTION_ALWAYS,
    )
    result = simulate_representative_day(day)

    assert result.battery_to_load_kwh == 0.0
    assert result.import_peak_kwh + result.import_off_kwh == pytest.approx(30.0)
    assert np.allclose(result.hourly.soc_kwh, BATTERY_USABLE_KWH * 0.5)
    assert result.battery_reserve_hits == 24


def test_simulation_is_deterministic() -> None:
    first = simulate_representative_day(_day()).totals()
    second = simulate_representative_day(_day()).totals()
    assert first == second


def test_invalid_inputs_raise() -> None:
    with pytest.raises(ValueError):
        simulate_representative_day(_day(load_shape=np.ones(23) / 23))
    with pytest.raises(ValueError):
        simulate_representative_day(_day(dispatch_mode="arbitrage"))
    with pytest.raises(ValueError):
        discharge_allowed("arbitrage", 17)


def test_discharge_windows() -> None:
    assert discharge_allowed("self_consumption_peak_then_postpeak", 22)
    assert not discharge_allowed("self_consumption_peak_then_postpeak", 10)
    assert not discharge_allowed(DISPATCH_PEAK_ONLY, 22)
    assert discharge_allowed(DISPATCH_SELF_CONSUMPTION_ALWAYS, 3)
