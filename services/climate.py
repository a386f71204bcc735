"""Climate profiles: validation, synthetic fallback and snapshot resolution.

A :class:`ClimateProfile` carries everything the simulator needs to know
about a site's sun and temperature: annual yield per installed kW, monthly
and hourly production weights, and a representative hourly temperature
curve per month. Profiles normally come from an hourly PVWatts run for the
home's ZIP code; whenever that is unavailable a deterministic synthetic
profile is substituted and the substitution is tagged on the snapshot.
"""
from __future__ import annotations

import hashlib
import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
import pandas as pd

from utils.profiles import DEFAULT_SOLAR_PROFILE_RAW, normalize_profile, readonly
from utils.tou import (
    HOURS_PER_DAY,
    MONTHS_PER_YEAR,
    SUMMER_MONTHS,
    WINTER_MONTHS,
)

TEMP_SOURCE_NREL = "nrel_tamb"
TEMP_SOURCE_SYNTHETIC = "synthetic_temp_fallback"
TEMP_SOURCES = (TEMP_SOURCE_NREL, TEMP_SOURCE_SYNTHETIC)

STATUS_LIVE = "verified_live"
STATUS_CACHE = "verified_cache"
STATUS_FALLBACK = "fallback_synthetic"

FALLBACK_REASONS = (
    "invalid_zip",
    "rate_limit_429",
    "location_lookup_failed",
    "missing_data",
    "parse_error",
    "network_error",
    "invalid_profile",
)

KEY_MODE_USER = "user_key"
KEY_MODE_DEMO = "demo_key"
NREL_DEMO_KEY = "DEMO_KEY"

# PVWatts request held fixed so cached profiles stay comparable.
NREL_PROFILE_PARAMS: Dict[str, Any] = {
    "system_capacity": 1,
    "module_type": 1,
    "array_type": 1,
    "tilt": 20,
    "azimuth": 180,
    "losses": 14,
    "timeframe": "hourly",
}

CLIMATE_CACHE_TTL_SECONDS = 30 * 24 * 3600
ZIP_COORD_CACHE_TTL_SECONDS = 180 * 24 * 3600

HOURS_PER_YEAR = 8760
DEFAULT_ANNUAL_YIELD = 1700.0
DEFAULT_YIELD_LABEL = "Default profile"

MONTHLY_DAYLIGHT_HOURS: tuple[float, ...] = (
    9.8, 10.7, 11.9, 13.1, 14.1, 14.6, 14.4, 13.5, 12.3, 11.1, 10.0, 9.5,
)
SYNTHETIC_TEMP_MONTHLY_AVG_F: tuple[float, ...] = (
    47, 50, 55, 60, 67, 75, 81, 80, 75, 66, 55, 48,
)


@dataclass(frozen=True)
class ZipYieldHint:
    start: int
    end: int
    annual_yield: float
    label: str


ZIP_YIELD_HINTS: tuple[ZipYieldHint, ...] = (
    ZipYieldHint(90000, 93599, 1850.0, "SoCal inland profile"),
    ZipYieldHint(93600, 96199, 1700.0, "NorCal inland profile"),
    ZipYieldHint(97000, 98699, 1300.0, "Pacific Northwest profile"),
    ZipYieldHint(80000, 81699, 1650.0, "Mountain West profile"),
    ZipYieldHint(85000, 86599, 1950.0, "Desert Southwest profile"),
)


class ClimateFetchError(RuntimeError):
    """Raised by climate fetchers; ``reason`` is one of ``FALLBACK_REASONS``."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason if reason in FALLBACK_REASONS else "network_error"


@dataclass(eq=False)
class ClimateProfile:
    """Site production and temperature profile.

    Arrays are converted to read-only float arrays on creation so a profile
    shared across scenarios cannot be mutated by one of them.
    """

    annual_kwh_per_kw: float
    monthly_profile: np.ndarray
    hourly_by_month: np.ndarray
    temp_hourly_f_by_month: np.ndarray
    temp_source: str = TEMP_SOURCE_SYNTHETIC

    def __post_init__(self) -> None:
        self.annual_kwh_per_kw = float(self.annual_kwh_per_kw)
        self.monthly_profile = readonly(self.monthly_profile)
        self.hourly_by_month = readonly(self.hourly_by_month)
        self.temp_hourly_f_by_month = readonly(self.temp_hourly_f_by_month)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "annual_kwh_per_kw": self.annual_kwh_per_kw,
            "monthly_profile": self.monthly_profile.tolist(),
            "hourly_by_month": self.hourly_by_month.tolist(),
            "temp_hourly_f_by_month": self.temp_hourly_f_by_month.tolist(),
            "temp_source": self.temp_source,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ClimateProfile":
        """Build a profile from a mapping; raises ``ValueError`` on malformed arrays."""

        try:
            return cls(
                annual_kwh_per_kw=float(payload["annual_kwh_per_kw"]),
                monthly_profile=np.asarray(payload["monthly_profile"], dtype=float),
                hourly_by_month=np.asarray(payload["hourly_by_month"], dtype=float),
                temp_hourly_f_by_month=np.asarray(payload["temp_hourly_f_by_month"], dtype=float),
                temp_source=str(payload.get("temp_source", TEMP_SOURCE_SYNTHETIC)),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Climate profile payload is incomplete: {exc}") from exc


def _all_finite(arr: np.ndarray) -> bool:
    return bool(np.all(np.isfinite(arr)))


def validate_climate_profile(profile: Optional[ClimateProfile]) -> List[str]:
    """Return a list of problems with ``profile``; empty means valid."""

    if profile is None:
        return ["Climate profile is missing."]

    errors: List[str] = []
    if not math.isfinite(profile.annual_kwh_per_kw) or profile.annual_kwh_per_kw <= 0:
        errors.append("Annual yield per kW must be a positive number.")

    monthly = profile.monthly_profile
    if monthly.shape != (MONTHS_PER_YEAR,) or not _all_finite(monthly) or np.any(monthly < 0):
        errors.append("Monthly profile must hold 12 finite, non-negative values.")

    hourly = profile.hourly_by_month
    if hourly.shape != (MONTHS_PER_YEAR, HOURS_PER_DAY) or not _all_finite(hourly) or np.any(hourly < 0):
        errors.append("Hourly profile must be a 12x24 grid of finite, non-negative values.")
    elif monthly.shape == (MONTHS_PER_YEAR,) and (monthly.sum() <= 0 or hourly.sum() <= 0):
        errors.append("Climate profile carries no solar energy.")

    temps = profile.temp_hourly_f_by_month
    if temps.shape != (MONTHS_PER_YEAR, HOURS_PER_DAY) or not _all_finite(temps):
        errors.append("Temperature profile must be a 12x24 grid of finite values.")

    if profile.temp_source not in TEMP_SOURCES:
        errors.append(f"Temperature source must be one of {TEMP_SOURCES}.")
    return errors


def is_valid_climate_profile(profile: Optional[ClimateProfile]) -> bool:
    return not validate_climate_profile(profile)


def parse_zip(zip_raw: Any) -> Optional[str]:
    """Return the 5-digit ZIP string or ``None`` when ``zip_raw`` is not one."""

    text = str(zip_raw if zip_raw is not None else "").strip()
    if len(text) == 5 and text.isdigit():
        return text
    return None


def infer_yield_from_zip(zip_raw: Any) -> Tuple[float, str]:
    """Heuristic annual kWh per kW for a ZIP code, with a display label."""

    try:
        zip_num = float(str(zip_raw if zip_raw is not None else "").strip())
    except ValueError:
        return DEFAULT_ANNUAL_YIELD, DEFAULT_YIELD_LABEL
    if not math.isfinite(zip_num):
        return DEFAULT_ANNUAL_YIELD, DEFAULT_YIELD_LABEL

    for hint in ZIP_YIELD_HINTS:
        if hint.start <= zip_num <= hint.end:
            return hint.annual_yield, f"{hint.label} (ZIP inference)"
    return DEFAULT_ANNUAL_YIELD, DEFAULT_YIELD_LABEL


def build_synthetic_solar_hourly_shape(month_index: int) -> np.ndarray:
    """Gaussian daylight curve centred on solar noon for one month."""

    daylight = MONTHLY_DAYLIGHT_HOURS[month_index] if 0 <= month_index < MONTHS_PER_YEAR else 12.0
    sunrise = 12.0 - daylight / 2.0
    sunset = 12.0 + daylight / 2.0
    sigma = max(1.4, daylight / 4.2)

    centers = np.arange(HOURS_PER_DAY) + 0.5
    weights = np.exp(-((centers - 12.0) ** 2) / (2.0 * sigma * sigma))
    weights[(centers < sunrise) | (centers > sunset)] = 0.0
    return normalize_profile(weights)


def build_synthetic_temp_hourly_shape(month_index: int) -> np.ndarray:
    """Cosine diurnal temperature curve peaking at 15:00."""

    month_avg = SYNTHETIC_TEMP_MONTHLY_AVG_F[month_index] if 0 <= month_index < MONTHS_PER_YEAR else 65.0
    if month_index in SUMMER_MONTHS:
        amplitude = 14.0
    elif month_index in WINTER_MONTHS:
        amplitude = 10.0
    else:
        amplitude = 12.0
    hours = np.arange(HOURS_PER_DAY, dtype=float)
    return month_avg + np.cos((hours - 15.0) / 24.0 * 2.0 * math.pi) * amplitude


def synthetic_hourly_by_month() -> np.ndarray:
    return np.vstack([build_synthetic_solar_hourly_shape(month) for month in range(MONTHS_PER_YEAR)])


def synthetic_temp_by_month() -> np.ndarray:
    return np.vstack([build_synthetic_temp_hourly_shape(month) for month in range(MONTHS_PER_YEAR)])


def get_synthetic_climate_profile(zip_hint: Any = None) -> ClimateProfile:
    annual_yield, _label = infer_yield_from_zip(zip_hint)
    return ClimateProfile(
        annual_kwh_per_kw=annual_yield,
        monthly_profile=normalize_profile(DEFAULT_SOLAR_PROFILE_RAW),
        hourly_by_month=synthetic_hourly_by_month(),
        temp_hourly_f_by_month=synthetic_temp_by_month(),
        temp_source=TEMP_SOURCE_SYNTHETIC,
    )


def _hour_of_year_index() -> pd.DataFrame:
    """Month (0-11) and hour (0-23) columns for a non-leap 8760-hour year."""

    stamps = pd.date_range("2019-01-01", periods=HOURS_PER_YEAR, freq="h")
    return pd.DataFrame({"month": stamps.month - 1, "hour": stamps.hour})


def derive_climate_profile_from_hourly(
    ac_watts: Optional[Sequence[float]],
    tamb_c: Optional[Sequence[float]] = None,
) -> Optional[ClimateProfile]:
    """Collapse an hourly PVWatts run for a 1 kW array into a profile.

    ``ac_watts`` must hold at least 8760 values; only the first year is used.
    Non-finite or negative production counts as zero. Temperatures are used
    only when every month/hour bucket has at least one finite sample,
    otherwise the synthetic temperature curves are substituted. Returns
    ``None`` when the series is too short or produces no energy.
    """

    if ac_watts is None or len(ac_watts) < HOURS_PER_YEAR:
        return None

    frame = _hour_of_year_index()
    ac = pd.to_numeric(pd.Series(list(ac_watts[:HOURS_PER_YEAR])), errors="coerce")
    frame["ac_kwh"] = (ac.where(np.isfinite(ac), 0.0).fillna(0.0) / 1000.0).clip(lower=0.0).to_numpy()

    energy = frame.pivot_table(index="month", columns="hour", values="ac_kwh", aggfunc="sum")
    energy = energy.reindex(index=range(MONTHS_PER_YEAR), columns=range(HOURS_PER_DAY), fill_value=0.0)
    monthly_totals = energy.sum(axis=1).to_numpy()
    annual_kwh = float(monthly_totals.sum())
    if not math.isfinite(annual_kwh) or annual_kwh <= 0:
        return None

    hourly_rows = []
    for month in range(MONTHS_PER_YEAR):
        row = energy.loc[month].to_numpy(dtype=float)
        hourly_rows.append(normalize_profile(row) if row.sum() > 0 else build_synthetic_solar_hourly_shape(month))

    temp_source = TEMP_SOURCE_SYNTHETIC
    temps = synthetic_temp_by_month()
    if tamb_c is not None and len(tamb_c) >= HOURS_PER_YEAR:
        tamb = pd.to_numeric(pd.Series(list(tamb_c[:HOURS_PER_YEAR])), errors="coerce")
        frame["temp_f"] = (tamb.where(np.isfinite(tamb)) * 9.0 / 5.0 + 32.0).to_numpy()
        means = frame.pivot_table(index="month", columns="hour", values="temp_f", aggfunc="mean")
        means = means.reindex(index=range(MONTHS_PER_YEAR), columns=range(HOURS_PER_DAY))
        if not means.isna().to_numpy().any():
            temps = means.to_numpy(dtype=float)
            temp_source = TEMP_SOURCE_NREL

    return ClimateProfile(
        annual_kwh_per_kw=annual_kwh,
        monthly_profile=normalize_profile(monthly_totals),
        hourly_by_month=np.vstack(hourly_rows),
        temp_hourly_f_by_month=temps,
        temp_source=temp_source,
    )


def resolve_location_label(payload: Mapping[str, Any], fallback_label: str) -> str:
    station = payload.get("station_info") if isinstance(payload, Mapping) else None
    if not isinstance(station, Mapping):
        return fallback_label
    city = str(station.get("city") or "").strip()
    state = str(station.get("state") or "").strip()
    if city and state:
        return f"{city}, {state}"
    return city or fallback_label


def parse_pvwatts_response(payload: Any, fallback_label: str) -> Tuple[ClimateProfile, str]:
    """Turn a decoded PVWatts JSON body into ``(profile, location_label)``.

    Raises :class:`ClimateFetchError` with ``missing_data`` when the body has
    no usable hourly series.
    """

    if not isinstance(payload, Mapping):
        raise ClimateFetchError("parse_error", "PVWatts response is not a JSON object.")
    outputs = payload.get("outputs")
    outputs = outputs if isinstance(outputs, Mapping) else {}
    ac = outputs.get("ac") if isinstance(outputs.get("ac"), list) else None
    tamb = outputs.get("tamb") if isinstance(outputs.get("tamb"), list) else None
    profile = derive_climate_profile_from_hourly(ac, tamb)
    if profile is None:
        raise ClimateFetchError("missing_data", "PVWatts response has no usable hourly AC series.")
    return profile, resolve_location_label(payload, fallback_label)


@dataclass(frozen=True)
class ClimateContext:
    """Lookup parameters derived from the user's ZIP and optional API key."""

    ok: bool
    zip_raw: str
    zip: Optional[str] = None
    api_key: str = ""
    key_mode: str = KEY_MODE_DEMO
    cache_key: Optional[str] = None


def short_hash(text: str) -> str:
    """8 hex characters identifying ``text`` without exposing it."""

    return hashlib.sha1(str(text).encode("utf-8")).hexdigest()[:8]


def build_climate_context(zip_raw: Any, api_key_raw: Any = None) -> ClimateContext:
    raw_text = str(zip_raw if zip_raw is not None else "")
    zip_code = parse_zip(zip_raw)
    if zip_code is None:
        return ClimateContext(ok=False, zip_raw=raw_text)

    user_key = str(api_key_raw or "").strip()
    api_key = user_key or NREL_DEMO_KEY
    params = NREL_PROFILE_PARAMS
    cache_key = "|".join(
        [
            zip_code,
            f"sc{params['system_capacity']}",
            f"mt{params['module_type']}",
            f"at{params['array_type']}",
            f"tilt{params['tilt']}",
            f"az{params['azimuth']}",
            f"loss{params['losses']}",
            str(params["timeframe"]),
            short_hash(api_key),
        ]
    )
    return ClimateContext(
        ok=True,
        zip_raw=raw_text,
        zip=zip_code,
        api_key=api_key,
        key_mode=KEY_MODE_USER if user_key else KEY_MODE_DEMO,
        cache_key=cache_key,
    )


@dataclass(frozen=True)
class ClimateSnapshot:
    status: str
    profile: Optional[ClimateProfile]
    fallback_reason: Optional[str] = None
    location_label: str = ""
    key_mode: str = KEY_MODE_DEMO
    last_verified_at: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.status == STATUS_FALLBACK


@dataclass
class CacheEntry:
    value: Any
    cached_at: Optional[float] = None
    location_label: str = ""
    key_mode: str = KEY_MODE_DEMO
    last_verified_at: Optional[str] = None


class ClimateCache(Protocol):
    """Key/value store for resolved climate entries."""

    def get(self, key: str) -> Optional[CacheEntry]:
        ...

    def put(self, key: str, entry: CacheEntry) -> None:
        ...

    def expire_older_than(self, ttl_seconds: float) -> int:
        ...


class TtlStore:
    """Thread-safe in-memory cache with time-based and validity-based eviction."""

    def __init__(
        self,
        ttl_seconds: float = CLIMATE_CACHE_TTL_SECONDS,
        is_valid: Callable[[Any], bool] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._is_valid = is_valid
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def expire_older_than(self, ttl_seconds: float) -> int:
        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.cached_at is None
                or not math.isfinite(entry.cached_at)
                or now - entry.cached_at > ttl_seconds
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def get(self, key: str) -> Optional[CacheEntry]:
        self.expire_older_than(self.ttl_seconds)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_valid is not None and not self._is_valid(entry.value):
                del self._entries[key]
                return None
            return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        if self._is_valid is not None and not self._is_valid(entry.value):
            return
        if entry.cached_at is None:
            entry = replace(entry, cached_at=self._clock())
        with self._lock:
            self._entries[key] = entry


def new_climate_cache(clock: Callable[[], float] = time.time) -> TtlStore:
    return TtlStore(CLIMATE_CACHE_TTL_SECONDS, is_valid=is_valid_climate_profile, clock=clock)


def new_zip_coordinate_cache(clock: Callable[[], float] = time.time) -> TtlStore:
    def _has_coordinates(value: Any) -> bool:
        return (
            isinstance(value, tuple)
            and len(value) == 2
            and all(isinstance(v, (int, float)) and math.isfinite(v) for v in value)
        )

    return TtlStore(ZIP_COORD_CACHE_TTL_SECONDS, is_valid=_has_coordinates, clock=clock)


ProfileFetcher = Callable[[ClimateContext], Tuple[ClimateProfile, str]]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _fallback(zip_hint: Any, reason: str, label: str, key_mode: str) -> ClimateSnapshot:
    logging.getLogger(__name__).warning(
        "Using synthetic climate profile for %r (%s).", zip_hint, reason
    )
    return ClimateSnapshot(
        status=STATUS_FALLBACK,
        profile=get_synthetic_climate_profile(zip_hint),
        fallback_reason=reason,
        location_label=label,
        key_mode=key_mode,
    )


def resolve_climate_snapshot(
    context: Optional[ClimateContext],
    cache: Optional[ClimateCache] = None,
    fetch_profile: Optional[ProfileFetcher] = None,
    force_refresh: bool = False,
) -> ClimateSnapshot:
    """Resolve the climate snapshot for ``context``.

    Order of preference: a valid cached entry (unless ``force_refresh``),
    then ``fetch_profile``, then the synthetic profile. Fetchers signal
    failure by raising :class:`ClimateFetchError`; the reason is carried onto
    the fallback snapshot.
    """

    if context is None or not context.ok:
        zip_raw = context.zip_raw if context is not None else ""
        return _fallback(zip_raw, "invalid_zip", zip_raw or "ZIP invalid", KEY_MODE_DEMO)

    if context.cache_key is None:
        raise ValueError("Climate context for a valid ZIP must carry a cache key.")
    if cache is not None and not force_refresh:
        cached = cache.get(context.cache_key)
        if cached is not None:
            return ClimateSnapshot(
                status=STATUS_CACHE,
                profile=cached.value,
                location_label=cached.location_label or context.zip or "",
                key_mode=cached.key_mode or context.key_mode,
                last_verified_at=cached.last_verified_at,
            )

    if fetch_profile is None:
        return _fallback(context.zip, "network_error", context.zip or "", context.key_mode)

    try:
        profile, label = fetch_profile(context)
    except ClimateFetchError as exc:
        return _fallback(context.zip, exc.reason, context.zip or "", context.key_mode)

    errors = validate_climate_profile(profile)
    if errors:
        logging.getLogger(__name__).warning("Fetched climate profile rejected: %s", "; ".join(errors))
        return _fallback(context.zip, "invalid_profile", context.zip or "", context.key_mode)

    verified_at = _utc_now_iso()
    if cache is not None:
        cache.put(
            context.cache_key,
            CacheEntry(
                value=profile,
                location_label=label or "",
                key_mode=context.key_mode,
                last_verified_at=verified_at,
            ),
        )
    return ClimateSnapshot(
        status=STATUS_LIVE,
        profile=profile,
        location_label=label or context.zip or "",
        key_mode=context.key_mode,
        last_verified_at=verified_at,
    )
