from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from services.climate import (
    STATUS_FALLBACK,
    ClimateProfile,
    ClimateSnapshot,
    get_synthetic_climate_profile,
    is_valid_climate_profile,
)
from services.demand_response import (
    BASE_SUMMER_SETPOINT_F,
    BASE_WINTER_SETPOINT_F,
    MODE_AUTO,
    MODE_MANUAL,
    DemandResponseSchedule,
    HvacShiftConfig,
    WholeHouseFanConfig,
    plan_demand_response,
)
from services.dispatch import (
    BATTERY_AC_KW,
    BATTERY_USABLE_KWH,
    DISPATCH_MODES,
    DISPATCH_PEAK_THEN_POSTPEAK,
    DayInput,
    DayResult,
    simulate_representative_day,
)
from utils.economics import ProjectionAssumptions
from utils.profiles import (
    BASE_LOAD_HOURLY_RAW,
    DEFAULT_LOAD_PROFILE_RAW,
    DEFAULT_PEAK_SHARE,
    as_finite,
    build_hourly_load_shape,
    clamp,
    normalize_profile,
)
from utils.tou import (
    DAYS_IN_MONTH,
    MONTH_NAMES,
    MONTHS_PER_YEAR,
    SEASON_SUMMER,
    SEASON_WINTER,
    month_season,
)

VPP_CREDIT_PER_KW_YEAR = 35.0
DEFAULT_MONTHLY_RESERVE_PCT: tuple[float, ...] = (50, 50, 30, 30, 20, 20, 20, 20, 20, 30, 50, 50)

SETPOINT_RANGE_F = (55.0, 90.0)
SUMMER_SETPOINT_LOAD_SENSITIVITY_PER_DEG = 0.03
WINTER_SETPOINT_LOAD_SENSITIVITY_PER_DEG = 0.025
MIN_SUMMER_LOAD_MULTIPLIER = 0.70
MIN_WINTER_LOAD_MULTIPLIER = 0.75

EXPORT_MODE_FLAT = "flat"
EXPORT_MODE_MONTHLY = "monthly"
EXPORT_MODE_OVERRIDE = "nem3_override"
EXPORT_RATE_MODES = (EXPORT_MODE_FLAT, EXPORT_MODE_MONTHLY, EXPORT_MODE_OVERRIDE)


@dataclass(frozen=True)
class RateStructure:
    """Time-of-use tariff in $/kWh plus the fixed monthly charge.

    ``export_rate_mode`` selects between a flat peak/off-peak export credit,
    per-month export arrays, or one override rate applied to every hour.
    ``nbc_per_import_kwh`` is a non-bypassable charge billed on imports and
    never offset by export credit.
    """

    import_off_peak: float = 0.36
    import_peak: float = 0.58
    fixed_monthly_charge: float = 24.15
    nbc_per_import_kwh: float = 0.03
    export_rate_mode: str = EXPORT_MODE_OVERRIDE
    export_override_rate: float = 0.04
    export_off_peak: float = 0.04
    export_peak: float = 0.04
    export_monthly_off_peak: Tuple[float, ...] = (0.04,) * MONTHS_PER_YEAR
    export_monthly_peak: Tuple[float, ...] = (0.04,) * MONTHS_PER_YEAR

    def export_rates_for_month(self, month_index: int, rate_scale: float = 1.0) -> Tuple[float, float]:
        """Return ``(off_peak, peak)`` export credit for a 0-indexed month."""

        scale = rate_scale if math.isfinite(rate_scale) else 1.0
        if self.export_rate_mode == EXPORT_MODE_OVERRIDE:
            rate = as_finite(self.export_override_rate, 0.0)
            return rate * scale, rate * scale
        if self.export_rate_mode == EXPORT_MODE_MONTHLY:
            off = as_finite(_safe_index(self.export_monthly_off_peak, month_index), 0.0)
            peak = as_finite(_safe_index(self.export_monthly_peak, month_index), 0.0)
            return off * scale, peak * scale
        return as_finite(self.export_off_peak, 0.0) * scale, as_finite(self.export_peak, 0.0) * scale


@dataclass(frozen=True)
class MonthRates:
    """Scaled tariff values that apply to one month."""

    import_off_peak: float
    import_peak: float
    export_off_peak: float
    export_peak: float
    nbc_per_import_kwh: float
    fixed_monthly_charge: float


@dataclass(frozen=True)
class BatteryConfig:
    usable_kwh_per_battery: float = BATTERY_USABLE_KWH
    cycles_per_day: float = 0.85
    round_trip_efficiency: float = 0.9
    dispatch_mode: str = DISPATCH_PEAK_THEN_POSTPEAK
    min_soc_reserve_pct: float = 0.2
    monthly_reserve_pct: Optional[Tuple[float, ...]] = tuple(pct / 100.0 for pct in DEFAULT_MONTHLY_RESERVE_PCT)
    ac_kw_per_battery: float = BATTERY_AC_KW

    def reserve_pct_for_month(self, month_index: int) -> float:
        """Monthly reserve when configured, otherwise the default reserve (0-0.95)."""

        reserve = as_finite(_safe_index(self.monthly_reserve_pct, month_index), math.nan)
        if math.isfinite(reserve):
            return clamp(reserve, 0.0, 0.95)
        return clamp(self.min_soc_reserve_pct, 0.0, 0.95)


@dataclass(frozen=True)
class LoadConfig:
    annual_kwh: float = 24000.0
    peak_share: float = DEFAULT_PEAK_SHARE
    month_profile: Tuple[float, ...] = tuple(normalize_profile(DEFAULT_LOAD_PROFILE_RAW).tolist())
    hourly_base_shape: Tuple[float, ...] = BASE_LOAD_HOURLY_RAW
    summer_setpoint_f: float = BASE_SUMMER_SETPOINT_F
    winter_setpoint_f: float = BASE_WINTER_SETPOINT_F

    def season_load_multiplier(self, month_index: int) -> float:
        """Scale monthly load for thermostat setpoints away from 74/68 degF."""

        summer_delta = self.summer_setpoint_f - BASE_SUMMER_SETPOINT_F
        winter_delta = BASE_WINTER_SETPOINT_F - self.winter_setpoint_f
        summer = max(MIN_SUMMER_LOAD_MULTIPLIER, 1.0 - summer_delta * SUMMER_SETPOINT_LOAD_SENSITIVITY_PER_DEG)
        winter = max(MIN_WINTER_LOAD_MULTIPLIER, 1.0 + winter_delta * WINTER_SETPOINT_LOAD_SENSITIVITY_PER_DEG)
        season = month_season(month_index)
        if season == SEASON_SUMMER:
            return summer
        if season == SEASON_WINTER:
            return winter
        return 0.5 * summer + 0.5 * winter


@dataclass(frozen=True)
class ProductionConfig:
    climate: ClimateProfile
    solar_to_home_efficiency: float = 0.975

    @property
    def annual_yield(self) -> float:
        return self.climate.annual_kwh_per_kw


@dataclass(frozen=True)
class FinancingConfig:
    apr_pct: float = 6.0
    loan_years: int = 15


@dataclass(frozen=True)
class ClimateStatus:
    """Provenance of the climate profile a run used."""

    status: str = STATUS_FALLBACK
    location_label: str = ""
    last_verified_at: Optional[str] = None
    fallback_reason: Optional[str] = "missing_data"
    key_mode: str = "demo_key"
    temp_source: str = ""


@dataclass(frozen=True)
class ScaleOptions:
    """Multipliers for quick sensitivity runs; non-finite values fall back to 1."""

    solar_scale: float = 1.0
    battery_scale: float = 1.0
    rate_scale: float = 1.0

    def sanitized(self) -> "ScaleOptions":
        return ScaleOptions(
            solar_scale=max(0.0, as_finite(self.solar_scale, 1.0)),
            battery_scale=max(0.0, as_finite(self.battery_scale, 1.0)),
            rate_scale=max(0.0, as_finite(self.rate_scale, 1.0)),
        )


@dataclass(frozen=True, eq=False)
class SimulationInputs:
    """Fully resolved, immutable inputs shared by every scenario in a run."""

    load: LoadConfig
    production: ProductionConfig
    rates: RateStructure = field(default_factory=RateStructure)
    battery: BatteryConfig = field(default_factory=BatteryConfig)
    hvac: HvacShiftConfig = field(default_factory=HvacShiftConfig)
    whf: WholeHouseFanConfig = field(default_factory=WholeHouseFanConfig)
    schedule: DemandResponseSchedule = field(default_factory=DemandResponseSchedule)
    vpp_enabled: bool = False
    analysis: ProjectionAssumptions = field(default_factory=ProjectionAssumptions)
    financing: FinancingConfig = field(default_factory=FinancingConfig)
    climate: ClimateStatus = field(default_factory=ClimateStatus)


@dataclass
class MonthResult:
    """One month of simulated energy flows and bills (day tallies x days)."""

    month_index: int
    days: int
    home_load_kwh: float
    bill_before: float
    bill_after_energy: float
    bill_after_nbc: float
    fixed_charge: float
    export_credit_value: float
    raw_bill_after: float
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
    battery_reserve_hits: float
    min_soc_kwh: float
    solar_generation_kwh: float
    clipped_solar_kwh: float
    hvac_shift_capacity_kwh: float
    hvac_shift_scheduled_kwh: float
    hvac_shift_executed_kwh: float
    hvac_shift_to_pre_window_kwh: float
    hvac_shift_to_post_peak_kwh: float
    hvac_peak_import_avoided_kwh: float
    whf_fan_kwh: float
    whf_displaced_ac_kwh: float
    whf_net_reduction_kwh: float
    whf_active_hours: float

    @property
    def import_kwh(self) -> float:
        return self.import_peak_kwh + self.import_off_kwh

    @property
    def export_kwh(self) -> float:
        return self.export_peak_kwh + self.export_off_kwh

    @property
    def before_import_kwh(self) -> float:
        return self.before_import_peak_kwh + self.before_import_off_kwh


# MonthResult fields that add up into the annual totals.
SUMMED_MONTH_FIELDS: tuple[str, ...] = (
    "home_load_kwh",
    "bill_before",
    "bill_after_energy",
    "bill_after_nbc",
    "fixed_charge",
    "export_credit_value",
    "import_peak_kwh",
    "import_off_kwh",
    "export_peak_kwh",
    "export_off_kwh",
    "before_import_peak_kwh",
    "before_import_off_kwh",
    "direct_solar_to_load_kwh",
    "solar_to_battery_input_kwh",
    "solar_to_battery_stored_kwh",
    "battery_to_load_kwh",
    "battery_to_load_peak_kwh",
    "battery_to_load_post_peak_kwh",
    "battery_reserve_hits",
    "solar_generation_kwh",
    "clipped_solar_kwh",
    "hvac_shift_capacity_kwh",
    "hvac_shift_scheduled_kwh",
    "hvac_shift_executed_kwh",
    "hvac_shift_to_pre_window_kwh",
    "hvac_shift_to_post_peak_kwh",
    "hvac_peak_import_avoided_kwh",
    "whf_fan_kwh",
    "whf_displaced_ac_kwh",
    "whf_net_reduction_kwh",
    "whf_active_hours",
)


@dataclass
class AnnualResult:
    """Annual energy and bill totals for one (solar kW, battery count) pair.

    ``utility_bill_after`` is the post-upgrade utility bill after an annual
    true-up (export credit can offset energy charges but never the fixed or
    non-bypassable charges). ``net_energy_economics`` subtracts VPP revenue
    from that bill, and ``net_benefit`` is the household's annual gain
    versus the bill it would pay with no solar or storage at all.
    """

    solar_kw: float
    battery_count: int
    home_load_kwh: float
    bill_before: float
    bill_after_energy: float
    bill_after_nbc: float
    fixed_charge: float
    export_credit_value: float
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
    battery_reserve_hits: float
    solar_generation_kwh: float
    clipped_solar_kwh: float
    hvac_shift_capacity_kwh: float
    hvac_shift_scheduled_kwh: float
    hvac_shift_executed_kwh: float
    hvac_shift_to_pre_window_kwh: float
    hvac_shift_to_post_peak_kwh: float
    hvac_peak_import_avoided_kwh: float
    whf_fan_kwh: float
    whf_displaced_ac_kwh: float
    whf_net_reduction_kwh: float
    whf_active_hours: float
    min_soc_kwh: float
    energy_net_after_true_up: float
    vpp_revenue: float
    utility_bill_after: float
    net_energy_economics: float
    utility_savings: float
    net_benefit: float
    clipped_solar_pct: float
    months: Tuple[MonthResult, ...] = ()

    @property
    def import_kwh(self) -> float:
        return self.import_peak_kwh + self.import_off_kwh

    @property
    def export_kwh(self) -> float:
        return self.export_peak_kwh + self.export_off_kwh

    @property
    def annual_solar_kwh(self) -> float:
        return self.solar_generation_kwh + self.clipped_solar_kwh

    def non_finite_metrics(self) -> List[str]:
        """Names of headline metrics that are NaN or infinite."""

        return [name for name in REQUIRED_FINITE_METRICS if not math.isfinite(float(getattr(self, name)))]

    def monthly_frame(self) -> pd.DataFrame:
        rows = []
        for month in self.months:
            row: Dict[str, Any] = {"month": MONTH_NAMES[month.month_index]}
            row.update(asdict(month))
            row["import_kwh"] = month.import_kwh
            row["export_kwh"] = month.export_kwh
            rows.append(row)
        return pd.DataFrame(rows)

    def summary(self) -> Dict[str, float]:
        """Scalar annual totals without the monthly breakdown."""

        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "months"}


REQUIRED_FINITE_METRICS: tuple[str, ...] = (
    "bill_before",
    "utility_bill_after",
    "net_energy_economics",
    "utility_savings",
    "net_benefit",
    "vpp_revenue",
    "solar_generation_kwh",
    "import_peak_kwh",
    "import_off_kwh",
    "export_peak_kwh",
    "export_off_kwh",
)


def _safe_index(values: Optional[Sequence[Any]], idx: int) -> Any:
    if values is None or not 0 <= idx < len(values):
        return None
    return values[idx]


def _section(raw: Optional[Mapping[str, Any]], name: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    value = raw.get(name)
    return value if isinstance(value, Mapping) else {}


def _hour(value: Any, fallback: int) -> int:
    return int(clamp(math.floor(as_finite(value, fallback)), 0, 23))


def build_solar_hourly_shape(climate: ClimateProfile, month_index: int) -> np.ndarray:
    row = np.asarray(climate.hourly_by_month[month_index], dtype=float)
    return normalize_profile(np.where(np.isfinite(row), np.maximum(row, 0.0), 0.0))


def compute_month_bills(day: DayInput, days: int, rates: MonthRates) -> MonthResult:
    """Simulate ``day`` and scale it into a monthly bill.

    The "before" bill prices the month's load with no solar or storage at
    all; the raw "after" bill prices the simulated imports and subtracts the
    export credit. Annual true-up rules are applied later, not here.
    """

    safe_days = max(1, int(days))
    result: DayResult = simulate_representative_day(day)

    def scaled(value: float) -> float:
        return float(value) * safe_days

    before_peak = scaled(result.before_import_peak_kwh)
    before_off = scaled(result.before_import_off_kwh)
    import_peak = scaled(result.import_peak_kwh)
    import_off = scaled(result.import_off_kwh)
    export_peak = scaled(result.export_peak_kwh)
    export_off = scaled(result.export_off_kwh)

    export_credit = export_peak * rates.export_peak + export_off * rates.export_off_peak
    bill_before = (
        before_peak * rates.import_peak
        + before_off * rates.import_off_peak
        + (before_peak + before_off) * rates.nbc_per_import_kwh
        + rates.fixed_monthly_charge
    )
    bill_after_energy = import_peak * rates.import_peak + import_off * rates.import_off_peak
    bill_after_nbc = (import_peak + import_off) * rates.nbc_per_import_kwh

    hvac = result.hvac_plan
    whf = result.whf_plan
    return MonthResult(
        month_index=day.month_index,
        days=safe_days,
        home_load_kwh=scaled(day.day_home_load_kwh),
        bill_before=bill_before,
        bill_after_energy=bill_after_energy,
        bill_after_nbc=bill_after_nbc,
        fixed_charge=rates.fixed_monthly_charge,
        export_credit_value=export_credit,
        raw_bill_after=bill_after_energy + bill_after_nbc + rates.fixed_monthly_charge - export_credit,
        import_peak_kwh=import_peak,
        import_off_kwh=import_off,
        export_peak_kwh=export_peak,
        export_off_kwh=export_off,
        before_import_peak_kwh=before_peak,
        before_import_off_kwh=before_off,
        direct_solar_to_load_kwh=scaled(result.direct_solar_to_load_kwh),
        solar_to_battery_input_kwh=scaled(result.solar_to_battery_input_kwh),
        solar_to_battery_stored_kwh=scaled(result.solar_to_battery_stored_kwh),
        battery_to_load_kwh=scaled(result.battery_to_load_kwh),
        battery_to_load_peak_kwh=scaled(result.battery_to_load_peak_kwh),
        battery_to_load_post_peak_kwh=scaled(result.battery_to_load_post_peak_kwh),
        battery_reserve_hits=scaled(result.battery_reserve_hits),
        min_soc_kwh=result.min_soc_kwh,
        solar_generation_kwh=scaled(result.solar_generation_kwh),
        clipped_solar_kwh=scaled(result.clipped_solar_kwh),
        hvac_shift_capacity_kwh=scaled(hvac.capacity_kwh),
        hvac_shift_scheduled_kwh=scaled(hvac.scheduled_kwh),
        hvac_shift_executed_kwh=scaled(hvac.executed_kwh),
        hvac_shift_to_pre_window_kwh=scaled(hvac.shift_to_pre_kwh),
        hvac_shift_to_post_peak_kwh=scaled(hvac.shift_to_post_kwh),
        hvac_peak_import_avoided_kwh=scaled(hvac.peak_import_avoided_kwh),
        whf_fan_kwh=scaled(whf.fan_kwh),
        whf_displaced_ac_kwh=scaled(whf.displaced_ac_kwh),
        whf_net_reduction_kwh=scaled(whf.net_reduction_kwh),
        whf_active_hours=scaled(whf.active_hours),
    )


def _build_month_day(
    inputs: SimulationInputs,
    month: int,
    solar_kw: float,
    battery_count: int,
    scale: ScaleOptions,
    load_shape: np.ndarray,
) -> Tuple[DayInput, MonthRates]:
    days = DAYS_IN_MONTH[month]
    load = inputs.load
    home_load_kwh = load.annual_kwh * load.month_profile[month] * load.season_load_multiplier(month)
    climate = inputs.production.climate
    solar_kwh = solar_kw * climate.annual_kwh_per_kw * float(climate.monthly_profile[month]) * scale.solar_scale

    export_off, export_peak = inputs.rates.export_rates_for_month(month, scale.rate_scale)
    rates = MonthRates(
        import_off_peak=inputs.rates.import_off_peak * scale.rate_scale,
        import_peak=inputs.rates.import_peak * scale.rate_scale,
        export_off_peak=export_off,
        export_peak=export_peak,
        nbc_per_import_kwh=inputs.rates.nbc_per_import_kwh * scale.rate_scale,
        fixed_monthly_charge=inputs.rates.fixed_monthly_charge * scale.rate_scale,
    )
    battery = inputs.battery
    day = DayInput(
        month_index=month,
        day_home_load_kwh=home_load_kwh / days,
        day_solar_kwh=solar_kwh / days,
        load_shape=load_shape,
        solar_shape=build_solar_hourly_shape(climate, month),
        battery_count=battery_count,
        usable_kwh_per_battery=battery.usable_kwh_per_battery * scale.battery_scale,
        cycles_per_day=battery.cycles_per_day,
        round_trip_efficiency=battery.round_trip_efficiency,
        solar_to_home_efficiency=inputs.production.solar_to_home_efficiency,
        ac_kw_per_battery=battery.ac_kw_per_battery,
        dispatch_mode=battery.dispatch_mode,
        reserve_pct=battery.reserve_pct_for_month(month),
        hvac=inputs.hvac,
        ha_month=inputs.schedule.ha[month],
        whf=inputs.whf,
        whf_month=inputs.schedule.whf[month],
    )
    return day, rates


def fold_months(
    months: Sequence[MonthResult],
    solar_kw: float,
    battery_count: int,
    vpp_revenue: float,
) -> AnnualResult:
    """Reduce twelve month results into annual totals and bill metrics."""

    totals = {name: float(sum(getattr(month, name) for month in months)) for name in SUMMED_MONTH_FIELDS}
    energy_net = max(0.0, totals["bill_after_energy"] - totals["export_credit_value"])
    utility_bill_after = totals["fixed_charge"] + totals["bill_after_nbc"] + energy_net
    potential = totals["solar_generation_kwh"] + totals["clipped_solar_kwh"]
    min_soc = min((month.min_soc_kwh for month in months), default=0.0)
    return AnnualResult(
        solar_kw=float(solar_kw),
        battery_count=int(battery_count),
        min_soc_kwh=min_soc if math.isfinite(min_soc) else 0.0,
        energy_net_after_true_up=energy_net,
        vpp_revenue=vpp_revenue,
        utility_bill_after=utility_bill_after,
        net_energy_economics=utility_bill_after - vpp_revenue,
        utility_savings=totals["bill_before"] - utility_bill_after,
        net_benefit=totals["bill_before"] - utility_bill_after + vpp_revenue,
        clipped_solar_pct=totals["clipped_solar_kwh"] / potential if potential > 0 else 0.0,
        months=tuple(months),
        **totals,
    )


def calculate_annual_energy_and_bills(
    inputs: SimulationInputs,
    solar_kw: float,
    battery_count: int,
    scale_options: Optional[ScaleOptions] = None,
) -> AnnualResult:
    """Simulate all twelve representative days and aggregate the year.

    Every call returns a fresh :class:`AnnualResult`; ``inputs`` are never
    modified, so results for different candidates can be compared directly.
    """

    scale = (scale_options or ScaleOptions()).sanitized()
    count = max(0, int(battery_count))
    load_shape = build_hourly_load_shape(inputs.load.peak_share, inputs.load.hourly_base_shape)

    months: List[MonthResult] = []
    for month in range(MONTHS_PER_YEAR):
        day, rates = _build_month_day(inputs, month, float(solar_kw), count, scale, load_shape)
        months.append(compute_month_bills(day, DAYS_IN_MONTH[month], rates))

    vpp_revenue = (
        count * inputs.battery.ac_kw_per_battery * VPP_CREDIT_PER_KW_YEAR if inputs.vpp_enabled else 0.0
    )
    return fold_months(months, solar_kw, count, vpp_revenue)


def _resolve_climate(
    raw: Mapping[str, Any], snapshot: Optional[ClimateSnapshot]
) -> Tuple[ClimateProfile, ClimateStatus]:
    zip_code = _section(raw, "climate").get("zip_code")
    profile = snapshot.profile if snapshot is not None else None
    if snapshot is not None and profile is not None and is_valid_climate_profile(profile):
        status = ClimateStatus(
            status=snapshot.status,
            location_label=snapshot.location_label,
            last_verified_at=snapshot.last_verified_at,
            fallback_reason=snapshot.fallback_reason,
            key_mode=snapshot.key_mode,
            temp_source=profile.temp_source,
        )
        return profile, status

    profile = get_synthetic_climate_profile(zip_code)
    status = ClimateStatus(
        status=STATUS_FALLBACK,
        location_label=snapshot.location_label if snapshot is not None else "",
        fallback_reason="invalid_profile" if snapshot is not None else "missing_data",
        key_mode=snapshot.key_mode if snapshot is not None else "demo_key",
        temp_source=profile.temp_source,
    )
    return profile, status


def _build_hvac_config(ha_raw: Mapping[str, Any], summer_sp: float, winter_sp: float) -> HvacShiftConfig:
    enabled = bool(ha_raw.get("enabled", False))
    if not enabled:
        return HvacShiftConfig(enabled=False, summer_setpoint_f=summer_sp, winter_setpoint_f=winter_sp)
    return HvacShiftConfig(
        enabled=True,
        mode=MODE_MANUAL if ha_raw.get("mode") == MODE_MANUAL else MODE_AUTO,
        summer_setpoint_f=summer_sp,
        winter_setpoint_f=winter_sp,
        max_precool_offset_f=clamp(as_finite(ha_raw.get("max_precool_offset_f"), 3.0), 0.0, 10.0),
        max_preheat_offset_f=clamp(as_finite(ha_raw.get("max_preheat_offset_f"), 2.0), 0.0, 10.0),
        max_peak_relax_offset_f=clamp(as_finite(ha_raw.get("max_peak_relax_offset_f"), 2.0), 0.0, 10.0),
        sensitivity_kwh_per_deg_hour=max(0.0, as_finite(ha_raw.get("hvac_sensitivity_kwh_per_deg_hour"), 0.6)),
        success_rate=clamp(as_finite(ha_raw.get("success_rate_pct"), 70.0) / 100.0, 0.0, 1.0),
        pre_start_hour=_hour(ha_raw.get("pre_cool_start_hour"), 12),
        pre_end_hour=_hour(ha_raw.get("pre_cool_end_hour"), 16),
        max_shift_hours_per_day=int(clamp(math.floor(as_finite(ha_raw.get("max_shift_hours_per_day"), 4)), 1, 12)),
        max_shift_kwh_per_day=max(0.0, as_finite(ha_raw.get("max_shift_kwh_per_day"), 6.0)),
    )


def _build_whf_config(whf_raw: Mapping[str, Any]) -> WholeHouseFanConfig:
    enabled = bool(whf_raw.get("enabled", False))
    if not enabled:
        return WholeHouseFanConfig(enabled=False)
    start = _hour(whf_raw.get("start_hour"), 20) * 60 + int(clamp(as_finite(whf_raw.get("start_minute"), 30), 0, 59))
    end = _hour(whf_raw.get("end_hour"), 6) * 60 + int(clamp(as_finite(whf_raw.get("end_minute"), 0), 0, 59))
    months_raw = whf_raw.get("active_months")
    if not isinstance(months_raw, (list, tuple)):
        months_raw = (4, 5, 6, 7, 8)
    active_months = tuple(
        month for month in (int(math.floor(as_finite(m, -1))) for m in months_raw) if 0 <= month < MONTHS_PER_YEAR
    )
    return WholeHouseFanConfig(
        enabled=True,
        mode=MODE_MANUAL if whf_raw.get("mode") == MODE_MANUAL else MODE_AUTO,
        fan_watts=max(0.0, as_finite(whf_raw.get("fan_watts"), 200.0)),
        displaced_ac_watts=max(0.0, as_finite(whf_raw.get("displaced_ac_watts"), 3500.0)),
        success_rate=clamp(as_finite(whf_raw.get("success_rate_pct"), 85.0) / 100.0, 0.0, 1.0),
        start_minute=start,
        end_minute=end,
        active_months=active_months,
    )


def _build_rates(rates_raw: Mapping[str, Any]) -> RateStructure:
    export_rate = max(0.0, as_finite(rates_raw.get("export_rate"), 0.04))
    mode = rates_raw.get("export_rate_mode", EXPORT_MODE_OVERRIDE)
    if mode not in EXPORT_RATE_MODES:
        mode = EXPORT_MODE_OVERRIDE

    def monthly(key: str) -> Tuple[float, ...]:
        values = rates_raw.get(key)
        if not isinstance(values, (list, tuple)) or len(values) != MONTHS_PER_YEAR:
            return (export_rate,) * MONTHS_PER_YEAR
        return tuple(max(0.0, as_finite(v, export_rate)) for v in values)

    return RateStructure(
        import_off_peak=max(0.0, as_finite(rates_raw.get("import_off_peak"), 0.36)),
        import_peak=max(0.0, as_finite(rates_raw.get("import_peak"), 0.58)),
        fixed_monthly_charge=max(0.0, as_finite(rates_raw.get("fixed_monthly_charge"), 24.15)),
        nbc_per_import_kwh=max(0.0, as_finite(rates_raw.get("nbc_rate"), 0.03)),
        export_rate_mode=mode,
        export_override_rate=export_rate,
        export_off_peak=max(0.0, as_finite(rates_raw.get("export_off_peak"), export_rate)),
        export_peak=max(0.0, as_finite(rates_raw.get("export_peak"), export_rate)),
        export_monthly_off_peak=monthly("export_monthly_off_peak"),
        export_monthly_peak=monthly("export_monthly_peak"),
    )


def _build_battery(battery_raw: Mapping[str, Any]) -> BatteryConfig:
    mode = battery_raw.get("dispatch_mode", DISPATCH_PEAK_THEN_POSTPEAK)
    reserve_raw = battery_raw.get("monthly_reserve_pct", DEFAULT_MONTHLY_RESERVE_PCT)
    monthly_reserve: Optional[Tuple[float, ...]] = None
    if isinstance(reserve_raw, (list, tuple)) and len(reserve_raw) == MONTHS_PER_YEAR:
        monthly_reserve = tuple(as_finite(pct, math.nan) / 100.0 for pct in reserve_raw)
    return BatteryConfig(
        cycles_per_day=max(0.0, as_finite(battery_raw.get("cycles_per_day"), 0.85)),
        round_trip_efficiency=clamp(as_finite(battery_raw.get("round_trip_efficiency"), 0.9), 0.01, 1.0),
        dispatch_mode=mode if mode in DISPATCH_MODES else DISPATCH_PEAK_THEN_POSTPEAK,
        min_soc_reserve_pct=clamp(as_finite(battery_raw.get("min_soc_reserve_pct"), 20.0) / 100.0, 0.0, 0.95),
        monthly_reserve_pct=monthly_reserve,
    )


def build_simulation_inputs(
    raw_config: Optional[Mapping[str, Any]],
    climate_snapshot: Optional[ClimateSnapshot] = None,
) -> SimulationInputs:
    """Resolve a nested raw configuration into :class:`SimulationInputs`.

    Missing or non-finite values fall back to defaults and are clamped into
    their legal ranges. A snapshot whose profile fails validation (or no
    snapshot at all) is replaced with the synthetic profile for the
    configured ZIP code and the substitution is recorded on ``climate``.
    Demand-response schedules are derived here once per run.
    """

    raw = raw_config if isinstance(raw_config, Mapping) else {}
    profile, climate_status = _resolve_climate(raw, climate_snapshot)

    flex = _section(raw, "home_flex")
    ha_raw = _section(flex, "ha")
    whf_raw = _section(flex, "whf")
    summer_sp = clamp(as_finite(ha_raw.get("summer_setpoint_f"), BASE_SUMMER_SETPOINT_F), *SETPOINT_RANGE_F)
    winter_sp = clamp(as_finite(ha_raw.get("winter_setpoint_f"), BASE_WINTER_SETPOINT_F), *SETPOINT_RANGE_F)

    hvac = _build_hvac_config(ha_raw, summer_sp, winter_sp)
    whf = _build_whf_config(whf_raw)
    schedule = plan_demand_response(hvac, whf, profile.temp_hourly_f_by_month)

    home = _section(raw, "home")
    battery_raw = _section(raw, "battery")
    financing_raw = _section(raw, "financing")
    analysis_raw = _section(raw, "analysis")

    return SimulationInputs(
        load=LoadConfig(
            annual_kwh=max(0.0, as_finite(home.get("annual_load_kwh"), 24000.0)),
            peak_share=DEFAULT_PEAK_SHARE,
            summer_setpoint_f=summer_sp,
            winter_setpoint_f=winter_sp,
        ),
        production=ProductionConfig(climate=profile),
        rates=_build_rates(_section(raw, "rates")),
        battery=_build_battery(battery_raw),
        hvac=hvac,
        whf=whf,
        schedule=schedule,
        vpp_enabled=bool(battery_raw.get("vpp_enabled", False)),
        analysis=ProjectionAssumptions(
            years=max(1, int(math.floor(as_finite(analysis_raw.get("horizon_years"), 15)))),
            discount_rate=max(0.0, as_finite(analysis_raw.get("discount_rate_pct"), 6.0)) / 100.0,
            utility_escalation=max(0.0, as_finite(analysis_raw.get("utility_escalation_pct"), 3.0)) / 100.0,
            solar_degradation=max(0.0, as_finite(analysis_raw.get("solar_degradation_pct"), 0.5)) / 100.0,
            battery_degradation=max(0.0, as_finite(analysis_raw.get("battery_degradation_pct"), 2.0)) / 100.0,
        ),
        financing=FinancingConfig(
            apr_pct=max(0.0, as_finite(financing_raw.get("apr_pct"), 6.0)),
            loan_years=max(1, int(math.floor(as_finite(financing_raw.get("loan_years"), 15)))),
        ),
        climate=climate_status,
    )
