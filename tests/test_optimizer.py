import math
from dataclasses import replace
from types import SimpleNamespace

import pytest

import services.optimizer as optimizer
from services.optimizer import (
    INVALID_RANGE_MESSAGE,
    build_baseline_scenario,
    build_expansion_explanation,
    build_runtime_context,
    build_upgrade_scenario,
    compare_upgrade_objective,
    compute_upgrade_costs,
    optimize_upgrades,
    rank_scenarios,
    validate_planner_config,
)
from utils.economics import mortgage_payment

SMALL_SEARCH = {"solar_min_kw": 3.95, "solar_max_kw": 7.95, "solar_step_kw": 2.0}


def _config(**sections):
    raw = {"climate": {"zip_code": "90210"}, "sizing": dict(SMALL_SEARCH)}
    for name, values in sections.items():
        raw[name] = {**raw.get(name, {}), **values}
    return raw


@pytest.fixture(scope="module")
def context():
    return build_runtime_context(_config())


@pytest.fixture(scope="module")
def result(context):
    return optimize_upgrades(context)


def test_validation_messages() -> None:
    assert validate_planner_config({}) == []
    errors = validate_planner_config(
        {
            "sizing": {"solar_min_kw": 8.0, "solar_max_kw": 3.0, "solar_step_kw": 0.0},
            "home": {"annual_load_kwh": 0},
            "baseline_quotes": {"quote_395": -1},
        }
    )
    assert "Solar step must be greater than 0." in errors
    assert "Solar max must be greater than or equal to solar min." in errors
    assert "Solar max must be at least the selected Builder base kW (3.95)." in errors
    assert "Annual load must be greater than 0." in errors
    assert "Builder base quote values cannot be negative." in errors


def test_runtime_context_presets_and_search_range() -> None:
    small = build_runtime_context({"sizing": {"solar_min_kw": 1.0}})
    large = build_runtime_context({"sizing": {"builder_base_preset_kw": "5.53"}, "baseline_quotes": {"quote_553": 20000}})

    assert small.baseline.solar_kw == 3.95
    assert small.baseline.quote == 13710.0
    assert small.baseline.preset_label == "3.95 kW (10 modules)"
    assert small.search.min_kw == 3.95
    assert small.search.max_kw == pytest.approx(13.95)
    assert small.search.step_kw == 0.1
    assert large.baseline.solar_kw == 5.53
    assert large.baseline.quote == 20000.0
    assert large.baseline.battery_count == 0


def test_upgrade_costs_use_tiered_solar_rate(context) -> None:
    below = compute_upgrade_costs(context, 9.95, 1)
    above = compute_upgrade_costs(context, 10.0, 2)
    clamped = compute_upgrade_costs(context, 1.0, 7)

    assert below.solar_rate_per_kw == 2760.0
    assert below.solar_upgrade_cost == pytest.approx(6.0 * 2760.0)
    assert below.battery_upgrade_cost == 3900.0
    assert above.solar_rate_per_kw == 2660.0
    assert above.incremental_capex == pytest.approx(6.05 * 2660.0 + 9700.0)
    assert clamped.final_solar_kw == 3.95
    assert clamped.final_battery_count == 2
    assert clamped.added_solar_kw == 0.0


def test_custom_pricing_is_applied() -> None:
    context = build_runtime_context(_config(pricing={"solar_rate_below_10": 3000, "battery_cost_1": 5000}))
    costs = compute_upgrade_costs(context, 4.95, 1)
    assert costs.solar_upgrade_cost == pytest.approx(3000.0)
    assert costs.battery_upgrade_cost == 5000.0


def test_baseline_scenario(context) -> None:
    baseline = build_baseline_scenario(context)

    assert baseline.annual.bill_before > 0
    assert baseline.monthly_loan_payment == pytest.approx(mortgage_payment(13710.0, 6.0, 15))
    assert baseline.monthly_net_energy_outflow == pytest.approx(baseline.annual.net_energy_economics / 12)
    assert baseline.monthly_net_outflow_with_loan == pytest.approx(
        baseline.monthly_net_energy_outflow + baseline.monthly_loan_payment
    )


def test_no_upgrade_scenario_is_neutral(context) -> None:
    baseline = build_baseline_scenario(context)
    scenario = build_upgrade_scenario(context, baseline, 3.95, 0)

    assert scenario.is_no_upgrade
    assert scenario.incremental_capex == 0.0
    assert scenario.incremental_annual_benefit == pytest.approx(0.0)
    assert scenario.incremental_loan_payment == 0.0
    assert scenario.incremental_npv == pytest.approx(0.0)
    assert scenario.total_system_cost_proxy == 13710.0


def test_upgrade_scenario_metrics(context) -> None:
    baseline = build_baseline_scenario(context)
    scenario = build_upgrade_scenario(context, baseline, 7.95, 1)

    assert not scenario.is_no_upgrade
    assert scenario.incremental_annual_benefit == pytest.approx(
        scenario.annual.net_benefit - baseline.annual.net_benefit
    )
    assert scenario.incremental_loan_payment == pytest.approx(mortgage_payment(scenario.incremental_capex, 6.0, 15))
    assert scenario.incremental_monthly_net_outflow == pytest.approx(
        scenario.incremental_monthly_energy_delta + scenario.incremental_loan_payment
    )
    assert scenario.levered.cash_flows[0] == 0.0
    assert scenario.unlevered.cash_flows[0] == pytest.approx(-scenario.incremental_capex)
    assert scenario.added_solar_kwh > 0


def test_optimizer_evaluates_full_grid(result) -> None:
    assert result.error is None
    assert result.solar_candidates == [3.95, 5.95, 7.95]
    assert result.battery_candidates == [0, 1, 2]
    assert len(result.results) == 9
    assert result.invalid_scenario_count == 0
    assert len({scenario.key for scenario in result.results}) == 9
    assert sum(scenario.is_no_upgrade for scenario in result.results) == 1


def test_results_are_sorted_by_objective(result) -> None:
    for first, second in zip(result.results, result.results[1:]):
        assert compare_upgrade_objective(first, second) <= 0


def test_end_to_end_recommendation(result) -> None:
    assert result.baseline.annual.bill_before > 0
    assert result.best is not None
    assert result.best.final_solar_kw >= 3.95
    assert all(scenario.final_solar_kw >= 3.95 for scenario in result.results)
    if result.no_upgrade_recommended:
        assert result.best.is_no_upgrade
    else:
        assert result.best is result.results[0]


def test_optimizer_is_deterministic(context, result) -> None:
    again = optimize_upgrades(context)
    assert [s.key for s in again.results] == [s.key for s in result.results]
    assert [s.incremental_npv for s in again.results] == [s.incremental_npv for s in result.results]


def test_no_upgrade_recommended_when_nothing_pays() -> None:
    free_power = _config(
        rates={
            "import_off_peak": 0.0,
            "import_peak": 0.0,
            "nbc_rate": 0.0,
            "export_rate": 0.0,
        }
    )
    result = optimize_upgrades(build_runtime_context(free_power))

    assert result.no_upgrade_recommended
    assert result.best.is_no_upgrade
    assert result.best.final_solar_kw == 3.95
    assert result.best.final_battery_count == 0


def test_pinned_battery_count_keeps_no_upgrade(context) -> None:
    pinned = optimize_upgrades(context, fixed_battery_count=1)

    assert pinned.battery_candidates == [1]
    assert {s.final_battery_count for s in pinned.results} == {0, 1}
    assert sum(s.is_no_upgrade for s in pinned.results) == 1


def test_empty_lattice_reports_error() -> None:
    context = build_runtime_context(_config(sizing={"solar_step_kw": 0}))
    result = optimize_upgrades(context)

    assert result.error == INVALID_RANGE_MESSAGE
    assert result.results == []
    assert result.best is None


def test_non_finite_scenarios_are_discarded(context, monkeypatch) -> None:
    real = optimizer.calculate_annual_energy_and_bills

    def flaky(inputs, solar_kw, battery_count, scale_options=None):
        annual = real(inputs, solar_kw, battery_count, scale_options)
        if math.isclose(solar_kw, 5.95):
            return replace(annual, net_benefit=math.nan)
        return annual

    monkeypatch.setattr(optimizer, "calculate_annual_energy_and_bills", flaky)
    result = optimize_upgrades(context)

    assert result.invalid_scenario_count == 3
    assert len(result.results) == 6
    assert all(s.final_solar_kw != 5.95 for s in result.results)


def test_comparator_tie_breakers() -> None:
    def scenario(npv=0.0, outflow=0.0, capex=0.0, batteries=0, kw=4.0):
        return SimpleNamespace(
            incremental_npv=npv,
            incremental_monthly_net_outflow=outflow,
            incremental_capex=capex,
            final_battery_count=batteries,
            final_solar_kw=kw,
        )

    assert compare_upgrade_objective(scenario(npv=10), scenario(npv=5)) < 0
    assert compare_upgrade_objective(scenario(npv=5 + 1e-12), scenario(npv=5, outflow=-1)) > 0
    assert compare_upgrade_objective(scenario(capex=100), scenario(capex=200)) < 0
    assert compare_upgrade_objective(scenario(batteries=2), scenario(batteries=1)) > 0
    assert compare_upgrade_objective(scenario(kw=4.0), scenario(kw=5.0)) < 0
    assert compare_upgrade_objective(scenario(), scenario()) == 0

    ranked = rank_scenarios([scenario(kw=6.0), scenario(npv=1.0), scenario(kw=5.0)])
    assert [s.final_solar_kw for s in ranked] == [4.0, 5.0, 6.0]
    assert ranked[0].incremental_npv == 1.0


def test_ranked_frame(result) -> None:
    frame = result.to_frame()

    assert frame["rank"].tolist() == list(range(1, 10))
    assert frame["is_best"].sum() == 1
    assert frame.loc[frame["is_best"], "final_solar_kw"].iloc[0] == result.best.final_solar_kw
    assert {"levered_npv", "incremental_capex", "incremental_monthly_net_outflow"} <= set(frame.columns)


def test_expansion_explanation(context, result) -> None:
    expansion = build_expansion_explanation(context, result)

    assert expansion.error is None
    assert [(s.from_batteries, s.to_batteries) for s in expansion.steps] == [(0, 1), (1, 2)]
    assert expansion.start_batteries == 0
    assert expansion.recommended_batteries == result.best.final_battery_count
    for step in expansion.steps:
        assert step.on_recommended_path == (step.to_batteries <= expansion.recommended_batteries)
        assert step.added_solar_kwh >= 0

    best_by_count = {count: optimize_upgrades(context, fixed_battery_count=count).best for count in (0, 1, 2)}
    first = expansion.steps[0]
    assert first.best_solar_kw == best_by_count[1].final_solar_kw
    assert first.delta_npv == pytest.approx(best_by_count[1].incremental_npv - best_by_count[0].incremental_npv)


def test_expansion_reports_optimizer_error() -> None:
    context = build_runtime_context(_config(sizing={"solar_step_kw": -1}))
    expansion = build_expansion_explanation(context)

    assert expansion.error == INVALID_RANGE_MESSAGE
    assert expansion.steps == ()
