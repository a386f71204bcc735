from __future__ import annotations

import math
import os
from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional, Tuple

import numpy as np
import pandas as pd
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator, model_validator

from services.climate import (
    ClimateContext,
    ClimateProfile,
    ClimateSnapshot,
    build_climate_context,
    new_climate_cache,
    parse_pvwatts_response,
    resolve_climate_snapshot,
)
from services.demand_response import HvacShiftConfig, WholeHouseFanConfig
from services.dispatch import DISPATCH_MODES, DISPATCH_PEAK_THEN_POSTPEAK
from services.optimizer import (
    BASELINE_PRESETS,
    DEFAULT_PRESET,
    ExpansionResult,
    OptimizationResult,
    Scenario,
    UpgradePricing,
    build_expansion_explanation,
    build_runtime_context,
    optimize_upgrades,
    validate_planner_config,
)
from services.simulation_core import (
    DEFAULT_MONTHLY_RESERVE_PCT,
    EXPORT_MODE_OVERRIDE,
    EXPORT_RATE_MODES,
    FinancingConfig,
    RateStructure,
    SimulationInputs,
    calculate_annual_energy_and_bills,
)
from utils.economics import ProjectionAssumptions

_DEFAULT_RATES = RateStructure()
_DEFAULT_PRICING = UpgradePricing()
_DEFAULT_FINANCING = FinancingConfig()
_DEFAULT_ANALYSIS = ProjectionAssumptions()
_DEFAULT_HA = HvacShiftConfig()
_DEFAULT_WHF = WholeHouseFanConfig()


class SizingPayload(BaseModel):
    builder_base_preset_kw: Literal["3.95", "5.53"] = DEFAULT_PRESET
    solar_min_kw: Optional[float] = None
    solar_max_kw: Optional[float] = None
    solar_step_kw: float = 0.1


class BaselineQuotesPayload(BaseModel):
    quote_395: float = BASELINE_PRESETS["3.95"]["quote"]
    quote_553: float = BASELINE_PRESETS["5.53"]["quote"]


class HomePayload(BaseModel):
    annual_load_kwh: float = 24000.0


class ClimatePayload(BaseModel):
    """ZIP lookup parameters.

    ``pvwatts_response`` is a decoded PVWatts v8 body fetched by the client;
    without it the cached profile for the ZIP is used, or the synthetic one.
    """

    zip_code: str = "90210"
    nrel_api_key: Optional[str] = None
    pvwatts_response: Optional[Dict[str, Any]] = None
    force_refresh: bool = False


class RatesPayload(BaseModel):
    import_off_peak: float = _DEFAULT_RATES.import_off_peak
    import_peak: float = _DEFAULT_RATES.import_peak
    fixed_monthly_charge: float = _DEFAULT_RATES.fixed_monthly_charge
    nbc_rate: float = _DEFAULT_RATES.nbc_per_import_kwh
    export_rate_mode: str = EXPORT_MODE_OVERRIDE
    export_rate: float = _DEFAULT_RATES.export_override_rate
    export_off_peak: float = _DEFAULT_RATES.export_off_peak
    export_peak: float = _DEFAULT_RATES.export_peak
    export_monthly_off_peak: Optional[List[float]] = None
    export_monthly_peak: Optional[List[float]] = None

    @field_validator("export_rate_mode")
    @classmethod
    def _validate_export_mode(cls, value: str) -> str:
        if value not in EXPORT_RATE_MODES:
            raise ValueError(f"export_rate_mode must be one of {EXPORT_RATE_MODES}")
        return value

    @field_validator("export_monthly_off_peak", "export_monthly_peak")
    @classmethod
    def _twelve_months(cls, value: Optional[List[float]]) -> Optional[List[float]]:
        if value is not None and len(value) != 12:
            raise ValueError("monthly export rates need 12 values")
        return value


class PricingPayload(BaseModel):
    solar_rate_below_10: float = _DEFAULT_PRICING.solar_rate_below_tier
    solar_rate_at_least_10: float = _DEFAULT_PRICING.solar_rate_at_or_above_tier
    battery_cost_1: float = _DEFAULT_PRICING.battery_package_totals[1]
    battery_cost_2: float = _DEFAULT_PRICING.battery_package_totals[2]


class BatteryPayload(BaseModel):
    dispatch_mode: str = DISPATCH_PEAK_THEN_POSTPEAK
    cycles_per_day: float = 0.85
    round_trip_efficiency: float = 0.9
    min_soc_reserve_pct: float = 20.0
    monthly_reserve_pct: Optional[List[float]] = Field(default_factory=lambda: list(DEFAULT_MONTHLY_RESERVE_PCT))
    vpp_enabled: bool = False

    @field_validator("dispatch_mode")
    @classmethod
    def _validate_dispatch_mode(cls, value: str) -> str:
        if value not in DISPATCH_MODES:
            raise ValueError(f"dispatch_mode must be one of {DISPATCH_MODES}")
        return value

    @field_validator("round_trip_efficiency")
    @classmethod
    def _validate_rte(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("round_trip_efficiency must be in (0, 1]")
        return value

    @field_validator("monthly_reserve_pct")
    @classmethod
    def _twelve_reserves(cls, value: Optional[List[float]]) -> Optional[List[float]]:
        if value is not None and len(value) != 12:
            raise ValueError("monthly_reserve_pct needs 12 values")
        return value


class FinancingPayload(BaseModel):
    apr_pct: float = _DEFAULT_FINANCING.apr_pct
    loan_years: int = _DEFAULT_FINANCING.loan_years


class AnalysisPayload(BaseModel):
    horizon_years: int = _DEFAULT_ANALYSIS.years
    discount_rate_pct: float = _DEFAULT_ANALYSIS.discount_rate * 100.0
    utility_escalation_pct: float = _DEFAULT_ANALYSIS.utility_escalation * 100.0
    solar_degradation_pct: float = _DEFAULT_ANALYSIS.solar_degradation * 100.0
    battery_degradation_pct: float = _DEFAULT_ANALYSIS.battery_degradation * 100.0


class HaPayload(BaseModel):
    enabled: bool = False
    mode: Literal["auto", "manual"] = "auto"
    summer_setpoint_f: float = _DEFAULT_HA.summer_setpoint_f
    winter_setpoint_f: float = _DEFAULT_HA.winter_setpoint_f
    max_precool_offset_f: float = _DEFAULT_HA.max_precool_offset_f
    max_preheat_offset_f: float = _DEFAULT_HA.max_preheat_offset_f
    max_peak_relax_offset_f: float = _DEFAULT_HA.max_peak_relax_offset_f
    hvac_sensitivity_kwh_per_deg_hour: float = _DEFAULT_HA.sensitivity_kwh_per_deg_hour
    success_rate_pct: float = _DEFAULT_HA.success_rate * 100.0
    pre_cool_start_hour: int = _DEFAULT_HA.pre_start_hour
    pre_cool_end_hour: int = _DEFAULT_HA.pre_end_hour
    max_shift_hours_per_day: int = _DEFAULT_HA.max_shift_hours_per_day
    max_shift_kwh_per_day: float = _DEFAULT_HA.max_shift_kwh_per_day


class WhfPayload(BaseModel):
    enabled: bool = False
    mode: Literal["auto", "manual"] = "auto"
    fan_watts: float = _DEFAULT_WHF.fan_watts
    displaced_ac_watts: float = _DEFAULT_WHF.displaced_ac_watts
    success_rate_pct: float = _DEFAULT_WHF.success_rate * 100.0
    start_hour: int = _DEFAULT_WHF.start_minute // 60
    start_minute: int = _DEFAULT_WHF.start_minute % 60
    end_hour: int = _DEFAULT_WHF.end_minute // 60
    end_minute: int = _DEFAULT_WHF.end_minute % 60
    active_months: List[int] = Field(default_factory=lambda: list(_DEFAULT_WHF.active_months))


class HomeFlexPayload(BaseModel):
    ha: HaPayload = Field(default_factory=HaPayload)
    whf: WhfPayload = Field(default_factory=WhfPayload)


class PlannerConfigPayload(BaseModel):
    """Pydantic mirror of the planner's nested raw configuration."""

    sizing: SizingPayload = Field(default_factory=SizingPayload)
    baseline_quotes: BaselineQuotesPayload = Field(default_factory=BaselineQuotesPayload)
    home: HomePayload = Field(default_factory=HomePayload)
    climate: ClimatePayload = Field(default_factory=ClimatePayload)
    rates: RatesPayload = Field(default_factory=RatesPayload)
    pricing: PricingPayload = Field(default_factory=PricingPayload)
    battery: BatteryPayload = Field(default_factory=BatteryPayload)
    financing: FinancingPayload = Field(default_factory=FinancingPayload)
    analysis: AnalysisPayload = Field(default_factory=AnalysisPayload)
    home_flex: HomeFlexPayload = Field(default_factory=HomeFlexPayload)

    def build(self) -> Tuple[Dict[str, Any], List[str]]:
        """Return the raw configuration and any adjustment warnings.

        Raises ``HTTPException(400)`` when the configuration cannot be
        simulated.
        """

        raw = self.model_dump(exclude={"climate": {"pvwatts_response", "nrel_api_key", "force_refresh"}})
        errors = validate_planner_config(raw)
        if errors:
            raise HTTPException(status_code=400, detail=" ".join(errors))

        warnings: List[str] = []
        base_kw = BASELINE_PRESETS[self.sizing.builder_base_preset_kw]["solar_kw"]
        if self.sizing.solar_min_kw is not None and self.sizing.solar_min_kw < base_kw:
            warnings.append(f"solar_min_kw raised to the baseline size ({base_kw} kW).")
        return raw, warnings


class SimulationRequest(BaseModel):
    config: PlannerConfigPayload = Field(default_factory=PlannerConfigPayload)
    solar_kw: Optional[float] = None
    battery_count: int = Field(default=0, ge=0, le=2)
    include_monthly: bool = True


class OptimizeRequest(BaseModel):
    config: PlannerConfigPayload = Field(default_factory=PlannerConfigPayload)
    fixed_battery_count: Optional[int] = Field(default=None, ge=0, le=2)
    include_expansion: bool = True
    max_rows: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _expansion_needs_free_batteries(self) -> "OptimizeRequest":
        if self.include_expansion and self.fixed_battery_count is not None:
            raise ValueError("include_expansion requires fixed_battery_count to be unset.")
        return self


def _json_safe(value: Any) -> Any:
    """Recursively convert numpy values and drop non-finite floats to ``None``."""

    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, np.ndarray):
        return _json_safe(value.tolist())
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _frame_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return _json_safe(df.to_dict(orient="records"))


def _serialize_climate(inputs: SimulationInputs) -> Dict[str, Any]:
    data = asdict(inputs.climate)
    data["annual_kwh_per_kw"] = inputs.production.annual_yield
    return _json_safe(data)


def _serialize_scenario(scenario: Optional[Scenario]) -> Optional[Dict[str, Any]]:
    if scenario is None:
        return None
    row = scenario.to_row()
    row["levered_cash_flows"] = list(scenario.levered.cash_flows)
    row["unlevered_cash_flows"] = list(scenario.unlevered.cash_flows)
    return _json_safe(row)


def _serialize_optimization(result: OptimizationResult, max_rows: Optional[int]) -> Dict[str, Any]:
    baseline = result.baseline
    rows = _frame_records(result.to_frame())
    return {
        "objective": result.objective,
        "baseline": _json_safe(
            {
                "solar_kw": baseline.baseline.solar_kw,
                "battery_count": baseline.baseline.battery_count,
                "quote": baseline.baseline.quote,
                "preset_label": baseline.baseline.preset_label,
                "annual_net_benefit": baseline.annual_net_benefit,
                "monthly_loan_payment": baseline.monthly_loan_payment,
                "monthly_net_energy_outflow": baseline.monthly_net_energy_outflow,
                "monthly_net_outflow_with_loan": baseline.monthly_net_outflow_with_loan,
            }
        ),
        "solar_candidate_count": len(result.solar_candidates),
        "battery_candidates": result.battery_candidates,
        "invalid_scenario_count": result.invalid_scenario_count,
        "no_upgrade_recommended": result.no_upgrade_recommended,
        "best": _serialize_scenario(result.best),
        "rows": rows[:max_rows] if max_rows else rows,
    }


def _serialize_expansion(expansion: ExpansionResult) -> Dict[str, Any]:
    return _json_safe(
        {
            "start_batteries": expansion.start_batteries,
            "recommended_batteries": expansion.recommended_batteries,
            "no_upgrade_recommended": expansion.no_upgrade_recommended,
            "error": expansion.error,
            "steps": [asdict(step) for step in expansion.steps],
        }
    )


def _resolve_climate(payload: ClimatePayload) -> Tuple[ClimateSnapshot, List[str]]:
    context = build_climate_context(payload.zip_code, payload.nrel_api_key)
    fetcher = None
    if payload.pvwatts_response is not None:
        body = payload.pvwatts_response

        def fetcher(ctx: ClimateContext) -> Tuple[ClimateProfile, str]:
            return parse_pvwatts_response(body, ctx.zip or "")

    snapshot = resolve_climate_snapshot(
        context,
        cache=climate_cache,
        fetch_profile=fetcher,
        force_refresh=payload.force_refresh,
    )
    warnings: List[str] = []
    if snapshot.is_fallback:
        warnings.append(f"Using synthetic climate profile ({snapshot.fallback_reason}).")
    return snapshot, warnings


climate_cache = new_climate_cache()
app = FastAPI(
    title="Solar Upgrade Planner API",
    description="REST API for simulating and ranking home solar + battery upgrades.",
    version="0.1.0",
)


_default_cors_origins = [
    # Vite dev/preview servers
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
]
_allowed_origins_env = os.getenv("SOLAR_PLANNER_CORS_ORIGINS", "")
_allowed_origins = [
    origin.strip()
    for origin in _allowed_origins_env.split(",")
    if origin.strip()
] or _default_cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, str]:
    """Simple liveness probe for container orchestrators."""
    return {"status": "ok"}


@app.post("/simulate")
def simulate(request: SimulationRequest) -> Dict[str, Any]:
    """Simulate one (solar kW, battery count) system for a full year."""

    raw, cfg_warnings = request.config.build()
    snapshot, climate_warnings = _resolve_climate(request.config.climate)
    context = build_runtime_context(raw, snapshot)
    solar_kw = context.baseline.solar_kw if request.solar_kw is None else request.solar_kw
    if not math.isfinite(solar_kw) or solar_kw < 0:
        raise HTTPException(status_code=400, detail="solar_kw must be a non-negative number.")

    annual = calculate_annual_energy_and_bills(context.inputs, solar_kw, request.battery_count)
    response: Dict[str, Any] = {
        "warnings": cfg_warnings + climate_warnings,
        "climate": _serialize_climate(context.inputs),
        "summary": _json_safe(annual.summary()),
    }
    if request.include_monthly:
        response["monthly"] = _frame_records(annual.monthly_frame())
    return response


@app.post("/optimize")
def optimize(request: OptimizeRequest) -> Dict[str, Any]:
    """Rank upgrade candidates and explain the battery expansion path."""

    raw, cfg_warnings = request.config.build()
    snapshot, climate_warnings = _resolve_climate(request.config.climate)
    context = build_runtime_context(raw, snapshot)

    result = optimize_upgrades(context, fixed_battery_count=request.fixed_battery_count)
    if result.error:
        raise HTTPException(status_code=400, detail=result.error)

    response = {
        "warnings": cfg_warnings + climate_warnings,
        "climate": _serialize_climate(context.inputs),
        "optimization": _serialize_optimization(result, request.max_rows),
    }
    if request.include_expansion:
        response["expansion"] = _serialize_expansion(build_expansion_explanation(context, result))
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=False)
