"""Upgrade search over solar size and battery count.

Every candidate is priced against the installed baseline, simulated for a
full year and projected over the analysis horizon. Candidates are ranked by
levered (fully financed) incremental NPV with deterministic tie-breakers, so
repeated runs on identical inputs return the same order.
"""
from __future__ import annotations

import functools
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from services.climate import ClimateSnapshot
from services.simulation_core import (
    AnnualResult,
    SimulationInputs,
    build_simulation_inputs,
    calculate_annual_energy_and_bills,
)
from utils.economics import (
    ReturnsProjection,
    mortgage_payment,
    project_incremental_returns,
    project_levered_returns,
)
from utils.profiles import as_finite, clamp
from utils.sweeps import build_battery_candidates, build_solar_candidates

MAX_BATTERIES = 2
OBJECTIVE = "max_incremental_levered_npv"
RANK_TOLERANCE = 1e-9
NO_UPGRADE_EPSILON = 1e-6
INVALID_RANGE_MESSAGE = "Invalid solar candidate range. Ensure max >= min and step > 0."

BASELINE_PRESETS: Dict[str, Dict[str, Any]] = {
    "3.95": {"solar_kw": 3.95, "quote": 13710.0, "label": "3.95 kW (10 modules)", "quote_key": "quote_395"},
    "5.53": {"solar_kw": 5.53, "quote": 18110.0, "label": "5.53 kW (14 modules)", "quote_key": "quote_553"},
}
DEFAULT_PRESET = "3.95"


@dataclass(frozen=True)
class Baseline:
    solar_kw: float
    battery_count: int
    quote: float
    preset_label: str


@dataclass(frozen=True)
class UpgradePricing:
    """Installer pricing: tiered $/kW for solar and flat battery package totals."""

    solar_rate_below_tier: float = 2760.0
    solar_rate_at_or_above_tier: float = 2660.0
    tier_threshold_kw: float = 10.0
    battery_package_totals: tuple[float, ...] = (0.0, 3900.0, 9700.0)

    def solar_rate_per_kw(self, final_solar_kw: float) -> float:
        if final_solar_kw < self.tier_threshold_kw:
            return max(0.0, self.solar_rate_below_tier)
        return max(0.0, self.solar_rate_at_or_above_tier)

    def battery_package_cost(self, battery_count: int) -> float:
        idx = int(clamp(int(battery_count), 0, len(self.battery_package_totals) - 1))
        return self.battery_package_totals[idx]


@dataclass(frozen=True)
class SolarSearchRange:
    min_kw: float
    max_kw: float
    step_kw: float


@dataclass(frozen=True, eq=False)
class RuntimeContext:
    baseline: Baseline
    pricing: UpgradePricing
    search: SolarSearchRange
    inputs: SimulationInputs
    climate_snapshot: Optional[ClimateSnapshot] = None


@dataclass(frozen=True)
class UpgradeCosts:
    final_solar_kw: float
    final_battery_count: int
    added_solar_kw: float
    solar_rate_per_kw: float
    solar_upgrade_cost: float
    battery_upgrade_cost: float

    @property
    def incremental_capex(self) -> float:
        return self.solar_upgrade_cost + self.battery_upgrade_cost


@dataclass(frozen=True, eq=False)
class BaselineScenario:
    baseline: Baseline
    annual: AnnualResult
    monthly_loan_payment: float

    @property
    def annual_net_benefit(self) -> float:
        return self.annual.net_benefit

    @property
    def monthly_net_energy_outflow(self) -> float:
        return self.annual.net_energy_economics / 12.0

    @property
    def monthly_net_outflow_with_loan(self) -> float:
        return self.monthly_net_energy_outflow + self.monthly_loan_payment


@dataclass(frozen=True, eq=False)
class Scenario:
    """One priced and simulated (solar kW, battery count) candidate.

    ``incremental_*`` values are measured against the installed baseline.
    ``levered`` assumes the whole incremental capex is financed at the
    configured APR and term; ``unlevered`` assumes it is paid upfront.
    """

    costs: UpgradeCosts
    annual: AnnualResult
    is_no_upgrade: bool
    incremental_annual_benefit: float
    incremental_monthly_energy_delta: float
    incremental_loan_payment: float
    incremental_monthly_net_outflow: float
    unlevered: ReturnsProjection
    levered: ReturnsProjection
    baseline_solar_kwh: float
    total_system_cost_proxy: float

    @property
    def final_solar_kw(self) -> float:
        return self.costs.final_solar_kw

    @property
    def final_battery_count(self) -> int:
        return self.costs.final_battery_count

    @property
    def incremental_capex(self) -> float:
        return self.costs.incremental_capex

    @property
    def incremental_npv(self) -> float:
        return self.levered.npv

    @property
    def annual_solar_kwh(self) -> float:
        return self.annual.solar_generation_kwh

    @property
    def added_solar_kwh(self) -> float:
        return max(0.0, self.annual.solar_generation_kwh - self.baseline_solar_kwh)

    @property
    def key(self) -> str:
        return scenario_key(self.final_solar_kw, self.final_battery_count)

    def is_finite(self) -> bool:
        values = (
            self.incremental_annual_benefit,
            self.incremental_monthly_energy_delta,
            self.incremental_loan_payment,
            self.incremental_monthly_net_outflow,
            self.levered.npv,
            self.unlevered.npv,
        )
        return not self.annual.non_finite_metrics() and all(math.isfinite(v) for v in values)

    def to_row(self) -> Dict[str, Any]:
        return {
            "final_solar_kw": self.final_solar_kw,
            "final_batteries": self.final_battery_count,
            "added_solar_kw": self.costs.added_solar_kw,
            "is_no_upgrade": self.is_no_upgrade,
            "solar_upgrade_cost": self.costs.solar_upgrade_cost,
            "battery_upgrade_cost": self.costs.battery_upgrade_cost,
            "incremental_capex": self.incremental_capex,
            "annual_solar_kwh": self.annual_solar_kwh,
            "added_solar_kwh": self.added_solar_kwh,
            "annual_utility_bill_after": self.annual.utility_bill_after,
            "annual_net_energy_economics": self.annual.net_energy_economics,
            "annual_vpp_revenue": self.annual.vpp_revenue,
            "incremental_annual_benefit": self.incremental_annual_benefit,
            "incremental_monthly_energy_delta": self.incremental_monthly_energy_delta,
            "incremental_loan_payment": self.incremental_loan_payment,
            "incremental_monthly_net_outflow": self.incremental_monthly_net_outflow,
            "levered_npv": self.levered.npv,
            "levered_irr": self.levered.irr,
            "levered_payback_years": self.levered.payback_years,
            "unlevered_npv": self.unlevered.npv,
            "unlevered_irr": self.unlevered.irr,
            "unlevered_payback_years": self.unlevered.payback_years,
            "total_system_cost_proxy": self.total_system_cost_proxy,
        }


@dataclass(eq=False)
class OptimizationResult:
    baseline: BaselineScenario
    solar_candidates: List[float]
    battery_candidates: List[int]
    results: List[Scenario]
    best: Optional[Scenario]
    no_upgrade_recommended: bool
    invalid_scenario_count: int = 0
    error: Optional[str] = None
    objective: str = OBJECTIVE

    def to_frame(self) -> pd.DataFrame:
        """Ranked candidates as a table; ``rank`` is 1-based and ``is_best`` flags the pick."""

        df = pd.DataFrame([scenario.to_row() for scenario in self.results])
        if df.empty:
            return df
        df.insert(0, "rank", range(1, len(df) + 1))
        best_key = self.best.key if self.best is not None else None
        df["is_best"] = [scenario.key == best_key for scenario in self.results]
        return df


@dataclass(frozen=True)
class ExpansionStep:
    from_batteries: int
    to_batteries: int
    best_solar_kw: float
    annual_solar_kwh: float
    added_solar_kwh: float
    delta_annual_benefit: float
    delta_npv: float
    delta_monthly_outflow: float
    on_recommended_path: bool


@dataclass(frozen=True)
class ExpansionResult:
    steps: tuple[ExpansionStep, ...]
    recommended_batteries: int
    start_batteries: int = 0
    no_upgrade_recommended: bool = False
    error: Optional[str] = None


def scenario_key(solar_kw: float, battery_count: int) -> str:
    return f"{solar_kw:.6f}|{int(battery_count)}"


def _select_preset(sizing: Mapping[str, Any]) -> str:
    preset = str(sizing.get("builder_base_preset_kw", DEFAULT_PRESET))
    return preset if preset in BASELINE_PRESETS else DEFAULT_PRESET


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name) if isinstance(raw, Mapping) else None
    return value if isinstance(value, Mapping) else {}


def validate_planner_config(raw_config: Mapping[str, Any]) -> List[str]:
    """Return human-readable problems with the search and baseline settings.

    An empty list means the configuration can be simulated. Values that are
    missing are judged by their defaults.
    """

    sizing = _section(raw_config, "sizing")
    preset = BASELINE_PRESETS[_select_preset(sizing)]
    base_kw = preset["solar_kw"]
    min_kw = as_finite(sizing.get("solar_min_kw"), base_kw)
    max_kw = as_finite(sizing.get("solar_max_kw"), base_kw + 10.0)
    step_kw = as_finite(sizing.get("solar_step_kw"), 0.1)

    errors: List[str] = []
    if step_kw <= 0:
        errors.append("Solar step must be greater than 0.")
    if max_kw < min_kw:
        errors.append("Solar max must be greater than or equal to solar min.")
    if max_kw < base_kw:
        errors.append(f"Solar max must be at least the selected Builder base kW ({base_kw}).")
    if as_finite(_section(raw_config, "home").get("annual_load_kwh"), 24000.0) <= 0:
        errors.append("Annual load must be greater than 0.")
    quotes = _section(raw_config, "baseline_quotes")
    if as_finite(quotes.get("quote_395"), 0.0) < 0 or as_finite(quotes.get("quote_553"), 0.0) < 0:
        errors.append("Builder base quote values cannot be negative.")
    return errors


def build_runtime_context(
    raw_config: Mapping[str, Any],
    climate_snapshot: Optional[ClimateSnapshot] = None,
) -> RuntimeContext:
    """Resolve baseline, pricing, search range and simulation inputs for a run."""

    raw = raw_config if isinstance(raw_config, Mapping) else {}
    sizing = _section(raw, "sizing")
    preset_key = _select_preset(sizing)
    preset = BASELINE_PRESETS[preset_key]
    quotes = _section(raw, "baseline_quotes")
    baseline = Baseline(
        solar_kw=preset["solar_kw"],
        battery_count=0,
        quote=max(0.0, as_finite(quotes.get(preset["quote_key"]), preset["quote"])),
        preset_label=preset["label"],
    )

    pricing_raw = _section(raw, "pricing")
    defaults = UpgradePricing()
    pricing = UpgradePricing(
        solar_rate_below_tier=max(0.0, as_finite(pricing_raw.get("solar_rate_below_10"), defaults.solar_rate_below_tier)),
        solar_rate_at_or_above_tier=max(
            0.0, as_finite(pricing_raw.get("solar_rate_at_least_10"), defaults.solar_rate_at_or_above_tier)
        ),
        battery_package_totals=(
            0.0,
            max(0.0, as_finite(pricing_raw.get("battery_cost_1"), defaults.battery_package_totals[1])),
            max(0.0, as_finite(pricing_raw.get("battery_cost_2"), defaults.battery_package_totals[2])),
        ),
    )

    search = SolarSearchRange(
        min_kw=max(baseline.solar_kw, as_finite(sizing.get("solar_min_kw"), baseline.solar_kw)),
        max_kw=as_finite(sizing.get("solar_max_kw"), baseline.solar_kw + 10.0),
        step_kw=as_finite(sizing.get("solar_step_kw"), 0.1),
    )
    return RuntimeContext(
        baseline=baseline,
        pricing=pricing,
        search=search,
        inputs=build_simulation_inputs(raw, climate_snapshot),
        climate_snapshot=climate_snapshot,
    )


def compute_upgrade_costs(context: RuntimeContext, final_solar_kw: float, final_battery_count: int) -> UpgradeCosts:
    base = context.baseline
    solar_kw = max(base.solar_kw, as_finite(final_solar_kw, base.solar_kw))
    batteries = int(clamp(math.floor(as_finite(final_battery_count, base.battery_count)), 0, MAX_BATTERIES))
    added_kw = max(0.0, solar_kw - base.solar_kw)
    rate = context.pricing.solar_rate_per_kw(solar_kw)
    battery_cost = max(
        0.0,
        context.pricing.battery_package_cost(batteries) - context.pricing.battery_package_cost(base.battery_count),
    )
    return UpgradeCosts(
        final_solar_kw=solar_kw,
        final_battery_count=batteries,
        added_solar_kw=added_kw,
        solar_rate_per_kw=rate,
        solar_upgrade_cost=added_kw * rate,
        battery_upgrade_cost=battery_cost,
    )


def build_baseline_scenario(context: RuntimeContext) -> BaselineScenario:
    base = context.baseline
    annual = calculate_annual_energy_and_bills(context.inputs, base.solar_kw, base.battery_count)
    financing = context.inputs.financing
    return BaselineScenario(
        baseline=base,
        annual=annual,
        monthly_loan_payment=mortgage_payment(base.quote, financing.apr_pct, financing.loan_years),
    )


def build_upgrade_scenario(
    context: RuntimeContext,
    baseline: BaselineScenario,
    final_solar_kw: float,
    final_battery_count: int,
) -> Scenario:
    costs = compute_upgrade_costs(context, final_solar_kw, final_battery_count)
    annual = calculate_annual_energy_and_bills(context.inputs, costs.final_solar_kw, costs.final_battery_count)
    financing = context.inputs.financing
    assumptions = context.inputs.analysis

    incremental_benefit = annual.net_benefit - baseline.annual_net_benefit
    energy_delta = (annual.net_energy_economics - baseline.annual.net_energy_economics) / 12.0
    loan_payment = mortgage_payment(costs.incremental_capex, financing.apr_pct, financing.loan_years)

    return Scenario(
        costs=costs,
        annual=annual,
        is_no_upgrade=costs.added_solar_kw <= RANK_TOLERANCE
        and costs.final_battery_count == context.baseline.battery_count,
        incremental_annual_benefit=incremental_benefit,
        incremental_monthly_energy_delta=energy_delta,
        incremental_loan_payment=loan_payment,
        incremental_monthly_net_outflow=energy_delta + loan_payment,
        unlevered=project_incremental_returns(
            assumptions, costs.incremental_capex, incremental_benefit, costs.final_battery_count
        ),
        levered=project_levered_returns(
            assumptions,
            costs.incremental_capex,
            incremental_benefit,
            costs.final_battery_count,
            monthly_loan_payment=loan_payment,
            loan_years=financing.loan_years,
        ),
        baseline_solar_kwh=baseline.annual.solar_generation_kwh,
        total_system_cost_proxy=context.baseline.quote + costs.incremental_capex,
    )


def compare_upgrade_objective(a: Scenario, b: Scenario) -> int:
    """Ordering for ranked results: negative when ``a`` ranks ahead of ``b``."""

    if abs(a.incremental_npv - b.incremental_npv) > RANK_TOLERANCE:
        return -1 if a.incremental_npv > b.incremental_npv else 1
    if abs(a.incremental_monthly_net_outflow - b.incremental_monthly_net_outflow) > RANK_TOLERANCE:
        return -1 if a.incremental_monthly_net_outflow < b.incremental_monthly_net_outflow else 1
    if abs(a.incremental_capex - b.incremental_capex) > RANK_TOLERANCE:
        return -1 if a.incremental_capex < b.incremental_capex else 1
    if a.final_battery_count != b.final_battery_count:
        return -1 if a.final_battery_count < b.final_battery_count else 1
    if a.final_solar_kw != b.final_solar_kw:
        return -1 if a.final_solar_kw < b.final_solar_kw else 1
    return 0


def rank_scenarios(scenarios: Sequence[Scenario]) -> List[Scenario]:
    return sorted(scenarios, key=functools.cmp_to_key(compare_upgrade_objective))


def _select_best(ranked: Sequence[Scenario], no_upgrade: Optional[Scenario]) -> tuple[Optional[Scenario], bool]:
    if not ranked:
        return None, False
    first = ranked[0]
    if first.is_no_upgrade:
        return first, True
    if first.incremental_annual_benefit <= NO_UPGRADE_EPSILON and first.incremental_npv <= NO_UPGRADE_EPSILON:
        return (no_upgrade or first), no_upgrade is not None
    return first, False


def optimize_upgrades(context: RuntimeContext, fixed_battery_count: Optional[int] = None) -> OptimizationResult:
    """Evaluate every candidate and return them ranked.

    ``fixed_battery_count`` pins the battery dimension (clamped to the
    baseline count and the maximum). The explicit no-upgrade candidate is
    always evaluated. Candidates with non-finite metrics are dropped and
    counted in ``invalid_scenario_count``.
    """

    logger = logging.getLogger(__name__)
    baseline = build_baseline_scenario(context)
    search = context.search
    solar_candidates = build_solar_candidates(search.min_kw, search.max_kw, search.step_kw)
    if not solar_candidates:
        logger.warning(
            "Empty solar lattice for min=%s max=%s step=%s", search.min_kw, search.max_kw, search.step_kw
        )
        return OptimizationResult(
            baseline=baseline,
            solar_candidates=[],
            battery_candidates=[],
            results=[],
            best=None,
            no_upgrade_recommended=False,
            error=INVALID_RANGE_MESSAGE,
        )

    pinned = None if fixed_battery_count is None else int(math.floor(as_finite(fixed_battery_count, 0)))
    battery_candidates = build_battery_candidates(context.baseline.battery_count, pinned)
    logger.info(
        "Evaluating %d solar x %d battery candidates", len(solar_candidates), len(battery_candidates)
    )

    by_key: Dict[str, Scenario] = {}
    for battery_count in battery_candidates:
        for solar_kw in solar_candidates:
            scenario = build_upgrade_scenario(context, baseline, solar_kw, battery_count)
            by_key[scenario.key] = scenario
    no_upgrade = build_upgrade_scenario(
        context, baseline, context.baseline.solar_kw, context.baseline.battery_count
    )
    by_key[no_upgrade.key] = no_upgrade

    valid: List[Scenario] = []
    invalid_count = 0
    for scenario in by_key.values():
        if scenario.is_finite():
            valid.append(scenario)
        else:
            invalid_count += 1
            logger.warning("Discarding non-finite scenario %s", scenario.key)

    ranked = rank_scenarios(valid)
    surviving_no_upgrade = next((s for s in ranked if s.is_no_upgrade), None)
    best, no_upgrade_recommended = _select_best(ranked, surviving_no_upgrade)
    return OptimizationResult(
        baseline=baseline,
        solar_candidates=solar_candidates,
        battery_candidates=battery_candidates,
        results=ranked,
        best=best,
        no_upgrade_recommended=no_upgrade_recommended,
        invalid_scenario_count=invalid_count,
    )


def build_expansion_explanation(
    context: RuntimeContext,
    optimization: Optional[OptimizationResult] = None,
) -> ExpansionResult:
    """Explain the value of each added battery along the 0 -> 1 -> 2 path.

    For each battery count the optimizer is re-run with that count pinned;
    each step compares the best pinned result with the one before it.
    """

    opt = optimization if optimization is not None else optimize_upgrades(context)
    if opt.error or opt.best is None:
        return ExpansionResult(
            steps=(),
            recommended_batteries=0,
            error=opt.error or "No optimization result available.",
        )

    recommended = opt.best.final_battery_count
    best_by_count: Dict[int, Scenario] = {}
    for count in range(MAX_BATTERIES + 1):
        pinned = optimize_upgrades(context, fixed_battery_count=count)
        if pinned.error or pinned.best is None:
            return ExpansionResult(
                steps=(),
                recommended_batteries=recommended,
                error=pinned.error or f"Unable to evaluate fixed {count} battery path.",
            )
        best_by_count[count] = pinned.best

    steps: List[ExpansionStep] = []
    for to_count in range(1, MAX_BATTERIES + 1):
        prev = best_by_count[to_count - 1]
        nxt = best_by_count[to_count]
        steps.append(
            ExpansionStep(
                from_batteries=to_count - 1,
                to_batteries=to_count,
                best_solar_kw=nxt.final_solar_kw,
                annual_solar_kwh=nxt.annual_solar_kwh,
                added_solar_kwh=nxt.added_solar_kwh,
                delta_annual_benefit=nxt.incremental_annual_benefit - prev.incremental_annual_benefit,
                delta_npv=nxt.incremental_npv - prev.incremental_npv,
                delta_monthly_outflow=nxt.incremental_monthly_net_outflow - prev.incremental_monthly_net_outflow,
                on_recommended_path=to_count <= recommended,
            )
        )
    return ExpansionResult(
        steps=tuple(steps),
        recommended_batteries=recommended,
        no_upgrade_recommended=opt.no_upgrade_recommended,
    )
