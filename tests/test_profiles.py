import math

import numpy as np
import pytest

from utils.profiles import (
    BASE_LOAD_HOURLY_RAW,
    as_finite,
    build_hourly_load_shape,
    clamp,
    normalize_profile,
    peak_share_of,
    readonly,
)


def test_normalize_profile_sums_to_one() -> None:
    shape = normalize_profile([1.0, 3.0, 4.0])
    assert shape.sum() == pytest.approx(1.0)
    assert shape.tolist() == pytest.approx([0.125, 0.375, 0.5])


@pytest.mark.parametrize("values", [[0.0, 0.0, 0.0, 0.0], [1.0, -1.0, 0.0, 0.0], [1.0, math.nan, 2.0, 1.0]])
def test_normalize_profile_degenerate_inputs_fall_back_to_uniform(values) -> None:
    shape = normalize_profile(values)
    assert shape.tolist() == pytest.approx([0.25] * 4)


def test_normalize_profile_does_not_mutate_input() -> None:
    raw = np.array([2.0, 2.0])
    normalize_profile(raw)
    assert raw.tolist() == [2.0, 2.0]


def test_hourly_load_shape_hits_requested_peak_share() -> None:
    shape = build_hourly_load_shape(0.4)
    assert shape.sum() == pytest.approx(1.0)
    assert peak_share_of(shape) == pytest.approx(0.4)


@pytest.mark.parametrize("requested, expected", [(0.99, 0.95), (0.0, 0.05), (math.inf, 0.4)])
def test_hourly_load_shape_clamps_peak_share(requested: float, expected: float) -> None:
    assert peak_share_of(build_hourly_load_shape(requested)) == pytest.approx(expected)


def test_hourly_load_shape_keeps_relative_off_peak_order() -> None:
    base = np.asarray(BASE_LOAD_HOURLY_RAW)
    shape = build_hourly_load_shape(0.5)
    off_peak = [h for h in range(24) if h not in range(16, 21)]
    ratios = shape[off_peak] / base[off_peak]
    assert np.allclose(ratios, ratios[0])


@pytest.mark.parametrize("peak_value, off_value", [(1.0, 0.0), (0.0, 1.0)])
def test_hourly_load_shape_returns_one_sided_base_unchanged(peak_value: float, off_value: float) -> None:
    base = [peak_value if 16 <= hour < 21 else off_value for hour in range(24)]
    shape = build_hourly_load_shape(0.4, base)

    assert shape.tolist() == pytest.approx(normalize_profile(base).tolist())
    assert peak_share_of(shape) == pytest.approx(peak_value)


def test_hourly_load_shape_requires_24_hours() -> None:
    with pytest.raises(ValueError):
        build_hourly_load_shape(0.4, [1.0] * 23)


def test_as_finite_and_clamp() -> None:
    assert as_finite("2.5", 0.0) == 2.5
    assert as_finite(None, 7.0) == 7.0
    assert as_finite(math.nan, 1.0) == 1.0
    assert as_finite("abc", 3.0) == 3.0
    assert clamp(5.0, 0.0, 1.0) == 1.0
    assert clamp(-5.0, 0.0, 1.0) == 0.0


def test_readonly_arrays_reject_writes() -> None:
    arr = readonly([1, 2, 3])
    assert arr.dtype == float
    with pytest.raises(ValueError):
        arr[0] = 5.0
