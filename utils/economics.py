"""Loan, discounting and return helpers for residential upgrade scenarios."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from utils.profiles import as_finite, clamp


@dataclass(frozen=True)
class ProjectionAssumptions:
    """Multi-year assumptions applied to a first-year operating benefit.

    ``utility_escalation`` grows the benefit each year with tariffs, while
    ``solar_degradation`` and ``battery_degradation`` shrink it. Battery
    degradation only applies to scenarios that carry at least one battery.
    All rates are fractions (``0.03`` for 3 %).
    """

    years: int = 15
    discount_rate: float = 0.06
    utility_escalation: float = 0.03
    solar_degradation: float = 0.005
    battery_degradation: float = 0.02

    def sanitized(self) -> "ProjectionAssumptions":
        return ProjectionAssumptions(
            years=max(1, int(as_finite(self.years, 15))),
            discount_rate=clamp(as_finite(self.discount_rate, 0.06), 0.0, 2.0),
            utility_escalation=clamp(as_finite(self.utility_escalation, 0.03), 0.0, 1.0),
            solar_degradation=clamp(as_finite(self.solar_degradation, 0.005), 0.0, 1.0),
            battery_degradation=clamp(as_finite(self.battery_degradation, 0.02), 0.0, 1.0),
        )


@dataclass(frozen=True)
class ReturnsProjection:
    """Cash-flow stream and headline metrics for one projection.

    ``cash_flows[0]`` is the upfront (year-0) flow. ``payback_years`` is
    ``math.inf`` when the cumulative position never turns non-negative and
    ``irr`` is ``None`` when no rate could be bracketed.
    """

    cash_flows: tuple[float, ...]
    npv: float
    irr: Optional[float]
    payback_years: float
    cumulative: float


def _discount_factor(discount_rate: float, year_index: int) -> float:
    """Return the discount factor for a given year index (1-indexed)."""

    return 1.0 / ((1.0 + discount_rate) ** year_index)


def _compute_npv(cash_flows: Sequence[float], discount_rate: float) -> float:
    """Return the net present value of the provided cash flows."""

    return sum(cf * _discount_factor(discount_rate, idx) for idx, cf in enumerate(cash_flows))


def _payback_years(cash_flows: Sequence[float]) -> float:
    """First year whose cumulative cash position is non-negative."""

    if not cash_flows:
        return math.inf
    cumulative = cash_flows[0]
    for year, cf in enumerate(cash_flows[1:], start=1):
        cumulative += cf
        if cumulative >= 0:
            return float(year)
    return math.inf


def _solve_irr(
    cash_flows: Sequence[float],
    max_iterations: int = 120,
    tolerance: float = 1e-8,
) -> Optional[float]:
    """Compute IRR (as a fraction) with a bisection search.

    The bracket starts at ``[-0.99, 1.0]`` and the upper bound grows by 1.6x
    (at most 32 times, staying below 200) until NPV changes sign. Returns
    ``None`` when the flows do not contain both signs, no sign change can be
    bracketed, or an intermediate NPV is not finite.
    """

    if not any(cf < 0 for cf in cash_flows) or not any(cf > 0 for cf in cash_flows):
        return None

    def npv(rate: float) -> float:
        return _compute_npv(cash_flows, rate)

    low = -0.99
    high = 1.0
    npv_low = npv(low)
    npv_high = npv(high)
    expansions = 0
    while (
        math.isfinite(npv_low)
        and math.isfinite(npv_high)
        and npv_low * npv_high > 0
        and expansions < 32
        and high < 200
    ):
        high *= 1.6
        npv_high = npv(high)
        expansions += 1

    if not (math.isfinite(npv_low) and math.isfinite(npv_high)) or npv_low * npv_high > 0:
        return None

    for _ in range(max_iterations):
        mid = (low + high) / 2.0
        npv_mid = npv(mid)
        if not math.isfinite(npv_mid):
            return None
        if abs(npv_mid) < tolerance:
            return mid
        if npv_low * npv_mid <= 0:
            high = mid
        else:
            low = mid
            npv_low = npv_mid

    result = (low + high) / 2.0
    return result if math.isfinite(result) else None


def mortgage_payment(principal: float, apr_pct: float, years: float) -> float:
    """Return the level monthly payment that amortises ``principal``.

    ``apr_pct`` is a percentage (``6.0`` for 6 %). A non-positive principal
    costs nothing; a zero APR spreads the principal evenly.
    """

    principal = as_finite(principal, 0.0)
    if principal <= 0:
        return 0.0
    months = max(1, int(round(max(0.0, as_finite(years, 0.0)) * 12)))
    monthly_rate = max(0.0, as_finite(apr_pct, 0.0)) / 100.0 / 12.0
    if monthly_rate == 0:
        return principal / months
    growth = (1.0 + monthly_rate) ** months
    return principal * monthly_rate * growth / (growth - 1.0)


def project_annual_benefits(
    assumptions: ProjectionAssumptions,
    annual_benefit: float,
    battery_count: int,
) -> List[float]:
    """Return the year-1..N operating benefit stream."""

    params = assumptions.sanitized()
    battery_factor = 1.0 - params.battery_degradation if battery_count > 0 else 1.0
    annual_scale = (1.0 + params.utility_escalation) * (1.0 - params.solar_degradation) * battery_factor
    base = as_finite(annual_benefit, 0.0)
    return [base * annual_scale ** (year - 1) for year in range(1, params.years + 1)]


def _build_projection(cash_flows: List[float], discount_rate: float) -> ReturnsProjection:
    return ReturnsProjection(
        cash_flows=tuple(cash_flows),
        npv=_compute_npv(cash_flows, discount_rate),
        irr=_solve_irr(cash_flows),
        payback_years=_payback_years(cash_flows),
        cumulative=sum(cash_flows),
    )


def project_incremental_returns(
    assumptions: ProjectionAssumptions,
    capex: float,
    annual_benefit: float,
    battery_count: int,
) -> ReturnsProjection:
    """Unlevered returns: pay ``capex`` upfront, collect the benefit stream."""

    params = assumptions.sanitized()
    upfront = max(0.0, as_finite(capex, 0.0))
    benefits = project_annual_benefits(params, annual_benefit, battery_count)
    return _build_projection([-upfront] + benefits, params.discount_rate)


def project_levered_returns(
    assumptions: ProjectionAssumptions,
    capex: float,
    annual_benefit: float,
    battery_count: int,
    monthly_loan_payment: float,
    loan_years: float,
    financed_principal: Optional[float] = None,
) -> ReturnsProjection:
    """Financed returns: the loan covers ``financed_principal`` of the capex.

    By default the whole capex is financed, so the year-0 flow is zero and
    each year within the loan term carries twelve loan payments against the
    operating benefit.
    """

    params = assumptions.sanitized()
    upfront = max(0.0, as_finite(capex, 0.0))
    principal = upfront if financed_principal is None else clamp(as_finite(financed_principal, upfront), 0.0, upfront)
    payment = max(0.0, as_finite(monthly_loan_payment, 0.0))
    term = max(0.0, as_finite(loan_years, 0.0))

    benefits = project_annual_benefits(params, annual_benefit, battery_count)
    cash_flows = [-(upfront - principal)]
    for year, benefit in enumerate(benefits, start=1):
        loan_cost = 12.0 * payment if year <= term else 0.0
        cash_flows.append(benefit - loan_cost)
    return _build_projection(cash_flows, params.discount_rate)


__all__ = [
    "ProjectionAssumptions",
    "ReturnsProjection",
    "mortgage_payment",
    "project_annual_benefits",
    "project_incremental_returns",
    "project_levered_returns",
]
