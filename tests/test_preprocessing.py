from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ohlc_predictor.core.preprocessing import (
    WindowingConfig,
    build_training_sequences,
    denormalize,
    normalize,
    scale_down,
    scale_up,
    window_array,
)
from ohlc_predictor.core.series import OhlcPoint, OhlcValues, Series


def _series(count: int, scale: float | None = None) -> Series:
    start = date(2024, 1, 1)
    points = tuple(
        OhlcPoint(start + timedelta(days=i), 10.0 + i, 12.0 + i, 9.0 + i, 11.0 + i)
        for i in range(count)
    )
    return Series(points=points, scale=scale if scale is not None else 12.0 + count - 1)


def test_hundred_points_yield_nineteen_non_overlapping_windows() -> None:
    values = np.arange(400, dtype=np.float64).reshape(100, 4)
    windows = window_array(values, WindowingConfig(length=5, stride=5))

    assert windows.shape == (19, 5, 4)
    for k, window in enumerate(windows):
        np.testing.assert_array_equal(window, values[5 * k : 5 * k + 5])


def test_overlapping_stride() -> None:
    values = np.ones((12, 4))
    windows = window_array(values, WindowingConfig(length=3, stride=2))
    # starts 0, 2, 4, 6, 8
    assert windows.shape == (5, 3, 4)


def test_series_equal_to_window_length_yields_nothing() -> None:
    windows = window_array(np.ones((5, 4)), WindowingConfig(length=5))
    assert windows.shape == (0, 5, 4)


def test_max_history_truncates_before_windowing() -> None:
    values = np.arange(400, dtype=np.float64).reshape(100, 4)
    windows = window_array(values, WindowingConfig(length=5, max_history=30))
    assert windows.shape == (5, 5, 4)
    np.testing.assert_array_equal(windows[0], values[70:75])


def test_window_array_rejects_wrong_shape() -> None:
    with pytest.raises(ValueError):
        window_array(np.ones((10, 3)), WindowingConfig())


@pytest.mark.parametrize(
    "kwargs",
    [{"length": 1}, {"length": 5, "stride": 0}, {"length": 5, "max_history": 3}],
)
def test_windowing_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        WindowingConfig(**kwargs)


def test_normalize_round_trip() -> None:
    values = np.array([[10.0, 12.5, 9.75, 11.0], [138.0, 140.0, 120.0, 139.0]])
    scale = 140.0
    restored = denormalize(normalize(values, scale), scale)
    assert restored == pytest.approx(values)
    assert normalize(values, scale).max() == pytest.approx(1.0)


@pytest.mark.parametrize("scale", [0.0, -1.0, float("nan")])
def test_normalize_requires_positive_scale(scale: float) -> None:
    with pytest.raises(ValueError):
        normalize([1.0, 2.0], scale)


def test_scale_up_maps_known_prediction() -> None:
    predicted = scale_up(OhlcValues(0.5, 0.6, 0.4, 0.55), 138.0)
    assert predicted.as_tuple() == pytest.approx((69.0, 82.8, 55.2, 75.9))
    assert scale_down(predicted, 138.0).as_tuple() == pytest.approx((0.5, 0.6, 0.4, 0.55))


def test_build_training_sequences_normalises_by_series_scale() -> None:
    series = _series(20)
    sequences = build_training_sequences(series, WindowingConfig(length=5))

    assert sequences.shape == (3, 5, 4)
    assert sequences.max() <= 1.0
    np.testing.assert_allclose(sequences[0, 0], np.array([10.0, 12.0, 9.0, 11.0]) / series.scale)
