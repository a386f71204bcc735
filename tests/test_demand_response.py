import numpy as np
import pytest

from services.demand_response import (
    HaMonthSchedule,
    HvacShiftConfig,
    WhfMonthSchedule,
    WholeHouseFanConfig,
    build_hvac_shift_plan,
    build_whole_house_fan_plan,
    derive_auto_hvac_schedule,
    derive_auto_whf_schedule,
    plan_demand_response,
    season_daily_hvac_shift_capacity,
)
from services.climate import synthetic_temp_by_month
from utils.profiles import build_hourly_load_shape


def _constant_temps(value: float) -> np.ndarray:
    return np.full((12, 24), value)


def test_auto_hvac_schedule_follows_dominant_stress() -> None:
    hot = derive_auto_hvac_schedule(_constant_temps(90.0), 74.0, 68.0)[6]
    cold = derive_auto_hvac_schedule(_constant_temps(50.0), 74.0, 68.0)[0]
    mild = derive_auto_hvac_schedule(_constant_temps(71.0), 74.0, 68.0)[3]

    assert (hot.pre_start_hour, hot.pre_end_hour, hot.max_shift_hours) == (12, 16, 4)
    assert hot.success_rate == pytest.approx(0.95)
    assert (cold.pre_start_hour, cold.pre_end_hour) == (11, 15)
    assert (mild.pre_start_hour, mild.pre_end_hour, mild.max_shift_hours) == (13, 16, 3)
    assert mild.success_rate == pytest.approx(0.15)


def test_auto_hvac_success_scales_with_stress() -> None:
    schedule = derive_auto_hvac_schedule(_constant_temps(76.0), 74.0, 68.0)[6]
    assert schedule.success_rate == pytest.approx(0.15 + 0.8 * (2.0 / 8.0))


def test_auto_schedules_stay_within_clamp_ranges() -> None:
    temps = synthetic_temp_by_month()
    for ha in derive_auto_hvac_schedule(temps, 74.0, 68.0):
        assert 0.15 <= ha.success_rate <= 0.95
        assert 1 <= ha.max_shift_hours <= 4
    for whf in derive_auto_whf_schedule(temps, 74.0):
        assert 0.1 <= whf.success_rate <= 0.95
        assert 0 <= whf.start_minute < 1440
        assert 0 <= whf.end_minute < 1440


def test_auto_whf_needs_cooling_stress() -> None:
    mild = derive_auto_whf_schedule(_constant_temps(70.0), 74.0)[6]
    warm = derive_auto_whf_schedule(_constant_temps(80.0), 74.0)[6]
    hot = derive_auto_whf_schedule(_constant_temps(90.0), 74.0)[6]

    assert not mild.active
    assert warm.active
    assert (warm.start_minute, warm.end_minute) == (18 * 60, 9 * 60)
    assert warm.success_rate == pytest.approx(0.95)
    assert not hot.active
    assert hot.success_rate == pytest.approx(0.1)


def test_auto_whf_success_is_eligible_share_of_window() -> None:
    day = np.full(24, 90.0)
    day[[22, 23, 0, 1, 2, 3]] = 70.0
    temps = np.tile(day, (12, 1))

    schedule = derive_auto_whf_schedule(temps, 74.0)[6]
    # Hot hours still add cooling stress to the score, so the full band wins.
    assert (schedule.start_minute, schedule.end_minute) == (18 * 60, 9 * 60)
    assert schedule.success_rate == pytest.approx(6 / 15)
    assert schedule.active


def test_auto_whf_prefers_short_window_when_scores_tie() -> None:
    day = np.full(24, 50.0)
    day[[18, 19]] = 70.0
    temps = np.tile(day, (12, 1))

    schedule = derive_auto_whf_schedule(temps, 74.0)[6]
    assert (schedule.start_minute, schedule.end_minute) == (18 * 60, 20 * 60)
    assert schedule.success_rate == pytest.approx(0.95)
    assert not schedule.active


def test_disabled_programs_have_zero_success() -> None:
    schedule = plan_demand_response(HvacShiftConfig(), WholeHouseFanConfig(), synthetic_temp_by_month())
    assert all(month.success_rate == 0.0 for month in schedule.ha)
    assert all(month.success_rate == 0.0 and not month.active for month in schedule.whf)


def test_manual_programs_replicate_configuration() -> None:
    hvac = HvacShiftConfig(enabled=True, mode="manual", success_rate=0.5, pre_start_hour=14, pre_end_hour=16, max_shift_hours_per_day=1)
    whf = WholeHouseFanConfig(enabled=True, mode="manual", success_rate=0.6, active_months=(5, 6))
    schedule = plan_demand_response(hvac, whf, synthetic_temp_by_month())

    assert {month.success_rate for month in schedule.ha} == {0.5}
    assert schedule.ha[0].pre_hours == [14]
    assert [idx for idx, month in enumerate(schedule.whf) if month.active] == [5, 6]
    assert schedule.whf[5].start_minute == 20 * 60 + 30


def test_plan_rejects_bad_temperature_grid() -> None:
    with pytest.raises(ValueError):
        plan_demand_response(HvacShiftConfig(), WholeHouseFanConfig(), np.zeros((12, 23)))


def test_shift_capacity_by_season() -> None:
    config = HvacShiftConfig(enabled=True, max_shift_kwh_per_day=100.0)
    assert season_daily_hvac_shift_capacity(config, 6, 4) == pytest.approx(7.2 + 6.0)
    assert season_daily_hvac_shift_capacity(config, 0, 4) == pytest.approx(4.8 + 6.0)
    assert season_daily_hvac_shift_capacity(config, 2, 4) == pytest.approx(6.0 + 6.0)
    assert season_daily_hvac_shift_capacity(HvacShiftConfig(enabled=True), 6, 4) == pytest.approx(6.0)


def test_hvac_plan_moves_energy_from_peak_to_pre_window() -> None:
    config = HvacShiftConfig(enabled=True)
    schedule = HaMonthSchedule(success_rate=0.5, pre_start_hour=12, pre_end_hour=16, max_shift_hours=4)
    plan = build_hvac_shift_plan(config, 6, schedule, build_hourly_load_shape())

    assert plan.capacity_kwh == pytest.approx(6.0)
    assert plan.executed_kwh == pytest.approx(3.0)
    assert plan.pre_by_hour[12:16].sum() == pytest.approx(3.0)
    assert plan.post_by_hour[16:21].sum() == pytest.approx(-3.0)
    assert plan.load_delta.sum() == pytest.approx(0.0)
    assert plan.peak_import_avoided_kwh == pytest.approx(3.0)
    assert np.count_nonzero(plan.load_delta) == 9


def test_hvac_plan_is_empty_without_success_or_window() -> None:
    config = HvacShiftConfig(enabled=True)
    shape = build_hourly_load_shape()
    no_success = build_hvac_shift_plan(config, 6, HaMonthSchedule(success_rate=0.0, max_shift_hours=4), shape)
    no_window = build_hvac_shift_plan(config, 6, HaMonthSchedule(success_rate=0.8, pre_start_hour=12, pre_end_hour=12, max_shift_hours=4), shape)

    assert no_success.executed_kwh == 0.0
    assert not no_success.load_delta.any()
    assert not no_window.load_delta.any()


def test_whole_house_fan_plan_reduces_night_load() -> None:
    config = WholeHouseFanConfig(enabled=True)
    schedule = WhfMonthSchedule(active=True, success_rate=1.0, start_minute=20 * 60 + 30, end_minute=6 * 60)
    plan = build_whole_house_fan_plan(config, schedule)

    assert plan.active_hours == 10
    assert plan.fan_kwh == pytest.approx(2.0)
    assert plan.displaced_ac_kwh == pytest.approx(35.0)
    assert plan.net_reduction_kwh == pytest.approx(33.0)
    assert plan.load_delta_by_hour[21] == pytest.approx(-3.3)
    assert plan.load_delta_by_hour[12] == 0.0


def test_whole_house_fan_runs_on_hours_whose_midpoint_is_in_window() -> None:
    config = WholeHouseFanConfig(enabled=True)
    schedule = WhfMonthSchedule(active=True, success_rate=1.0, start_minute=22 * 60 + 45, end_minute=1 * 60 + 15)
    plan = build_whole_house_fan_plan(config, schedule)

    assert np.flatnonzero(plan.fan_by_hour).tolist() == [0, 23]
    assert plan.active_hours == 2


def test_whole_house_fan_never_adds_load() -> None:
    config = WholeHouseFanConfig(enabled=True, fan_watts=5000.0, displaced_ac_watts=1000.0)
    schedule = WhfMonthSchedule(active=True, success_rate=1.0, start_minute=0, end_minute=0)
    plan = build_whole_house_fan_plan(config, schedule)

    assert plan.active_hours == 24
    assert plan.net_reduction_kwh == 0.0
    assert not np.any(plan.load_delta_by_hour > 0)


def test_inactive_month_has_empty_fan_plan() -> None:
    plan = build_whole_house_fan_plan(WholeHouseFanConfig(enabled=True), WhfMonthSchedule(active=False, success_rate=0.9))
    assert plan.active_hours == 0
    assert plan.fan_kwh == 0.0
