"""Normalisation and windowing of OHLC series into training sequences."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np

from ohlc_predictor.core.series import OhlcValues, Series

LOGGER = logging.getLogger(__name__)

N_FEATURES = 4


@dataclass(frozen=True, slots=True)
class WindowingConfig:
    """Window length, stride and optional history cap used to cut sequences."""

    length: int = 5
    stride: int | None = None
    max_history: int | None = None

    def __post_init__(self) -> None:
        if self.length < 2:
            raise ValueError("Window length must be at least 2.")
        if self.stride is not None and self.stride < 1:
            raise ValueError("Window stride must be positive.")
        if self.max_history is not None and self.max_history < self.length:
            raise ValueError("max_history must be at least the window length.")

    @property
    def effective_stride(self) -> int:
        return self.length if self.stride is None else self.stride


def _require_scale(scale: float) -> float:
    value = float(scale)
    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"Scale factor must be a positive number, got {scale!r}.")
    return value


def normalize(values: Any, scale: float) -> np.ndarray:
    """Divide every price by ``scale``."""

    return np.asarray(values, dtype=np.float64) / _require_scale(scale)


def denormalize(values: Any, scale: float) -> np.ndarray:
    """Multiply every price by ``scale``."""

    return np.asarray(values, dtype=np.float64) * _require_scale(scale)


def scale_down(point: OhlcValues, scale: float) -> OhlcValues:
    return OhlcValues.from_sequence(normalize(point.as_tuple(), scale))


def scale_up(point: OhlcValues, scale: float) -> OhlcValues:
    return OhlcValues.from_sequence(denormalize(point.as_tuple(), scale))


def window_array(values: np.ndarray, config: WindowingConfig) -> np.ndarray:
    """Slice an ``(n, 4)`` array into ``(k, length, 4)`` windows.

    Windows start at index 0 and advance by the stride. A window is only
    emitted while it ends strictly before the final observation, so a series
    of 100 points with length and stride 5 yields 19 windows.
    """

    array = np.asarray(values, dtype=np.float64)
    if array.ndim != 2 or array.shape[1] != N_FEATURES:
        raise ValueError(f"Expected an (n, {N_FEATURES}) array, got shape {array.shape}.")
    if config.max_history is not None and len(array) > config.max_history:
        array = array[-config.max_history :]

    length = config.length
    stride = config.effective_stride
    starts = range(0, max(len(array) - length, 0), stride)
    windows = [array[start : start + length] for start in starts]
    if not windows:
        return np.empty((0, length, N_FEATURES), dtype=np.float64)
    return np.stack(windows)


def build_training_sequences(series: Series, config: WindowingConfig | None = None) -> np.ndarray:
    """Normalise ``series`` by its scale factor and cut it into windows."""

    config = config or WindowingConfig()
    scaled = normalize(series.as_array(), series.scale)
    sequences = window_array(scaled, config)
    LOGGER.debug(
        "Built %s training sequences (length=%s, stride=%s) from %s points",
        len(sequences),
        config.length,
        config.effective_stride,
        len(series),
    )
    return sequences


__all__ = [
    "N_FEATURES",
    "WindowingConfig",
    "build_training_sequences",
    "denormalize",
    "normalize",
    "scale_down",
    "scale_up",
    "window_array",
]
