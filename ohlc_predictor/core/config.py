"""Configuration utilities for the OHLC predictor package."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

from ohlc_predictor.core.predictors import EXECUTION_MODES, RetryPolicy
from ohlc_predictor.core.preprocessing import WindowingConfig
from ohlc_predictor.core.series import DEFAULT_MIN_ROWS
from ohlc_predictor.core.training import TrainingOptions

ENV_PREFIX = "OHLC_PREDICTOR_"

SCALE_POLICIES: tuple[str, ...] = ("max", "fixed")
DEFAULT_FIXED_SCALE = 138.0
DEFAULT_HIDDEN_LAYERS: tuple[int, ...] = (8, 8)
DEFAULT_FAILURE_RESET_DELAY = 3.0


@dataclass
class PredictorConfig:
    """Runtime configuration for a prediction session."""

    window_length: int = 5
    window_stride: Optional[int] = None
    max_history: Optional[int] = None
    scale_policy: str = "max"
    fixed_scale: float = DEFAULT_FIXED_SCALE
    min_series_length: int = DEFAULT_MIN_ROWS
    min_training_points: int = 5
    learning_rate: float = 0.005
    error_threshold: float = 0.02
    max_iterations: int = 1000
    progress_every: int = 10
    hidden_layers: tuple[int, ...] = field(default_factory=lambda: DEFAULT_HIDDEN_LAYERS)
    execution_mode: str = "thread"
    engine_init_attempts: int = 10
    engine_init_delay: float = 0.5
    failure_reset_delay: float = DEFAULT_FAILURE_RESET_DELAY
    success_reset_delay: float = 0.0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self.scale_policy = str(self.scale_policy).strip().lower() or "max"
        self.execution_mode = str(self.execution_mode).strip().lower() or "thread"
        self.hidden_layers = _coerce_int_tuple(self.hidden_layers, DEFAULT_HIDDEN_LAYERS)
        if self.scale_policy not in SCALE_POLICIES:
            raise ValueError(f"scale_policy must be one of {', '.join(SCALE_POLICIES)}.")
        if self.execution_mode not in EXECUTION_MODES:
            raise ValueError(f"execution_mode must be one of {', '.join(EXECUTION_MODES)}.")
        if self.fixed_scale <= 0:
            raise ValueError("fixed_scale must be positive.")
        if self.min_series_length < 1:
            raise ValueError("min_series_length must be positive.")
        if self.min_training_points < 1:
            raise ValueError("min_training_points must be positive.")
        if any(size < 1 for size in self.hidden_layers):
            raise ValueError("hidden_layers must contain positive sizes.")
        if self.failure_reset_delay < 0 or self.success_reset_delay < 0:
            raise ValueError("Reset delays must not be negative.")
        # The derived value objects validate window, training and retry settings.
        _ = (self.windowing, self.training_options, self.retry_policy)

    @property
    def windowing(self) -> WindowingConfig:
        return WindowingConfig(
            length=self.window_length,
            stride=self.window_stride,
            max_history=self.max_history,
        )

    @property
    def training_options(self) -> TrainingOptions:
        return TrainingOptions(
            learning_rate=self.learning_rate,
            error_threshold=self.error_threshold,
            max_iterations=self.max_iterations,
            progress_every=self.progress_every,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.engine_init_attempts, delay=self.engine_init_delay)

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        payload["hidden_layers"] = list(self.hidden_layers)
        return payload


def _coerce_int_tuple(value: Iterable[Any] | str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        tokens = [token.strip() for token in value.split(",") if token.strip()]
    else:
        tokens = list(value)
    if not tokens:
        return default
    try:
        return tuple(int(token) for token in tokens)
    except (TypeError, ValueError) as exc:
        raise ValueError("hidden_layers must be a list of integers.") from exc


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str) -> Optional[int]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer.") from exc


def _env_float(name: str) -> Optional[float]:
    raw = _env(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number.") from exc


def load_environment() -> None:
    """Load configuration from an optional ``.env`` file."""

    load_dotenv()


def build_config(
    window_length: Optional[int] = None,
    window_stride: Optional[int] = None,
    max_history: Optional[int] = None,
    scale_policy: Optional[str] = None,
    fixed_scale: Optional[float] = None,
    learning_rate: Optional[float] = None,
    error_threshold: Optional[float] = None,
    max_iterations: Optional[int] = None,
    hidden_layers: Optional[Iterable[int] | str] = None,
    execution_mode: Optional[str] = None,
    seed: Optional[int] = None,
    **overrides: Any,
) -> PredictorConfig:
    """Build a :class:`PredictorConfig` from explicit values and ``OHLC_PREDICTOR_*`` variables.

    Explicit arguments win over environment variables, which win over the
    dataclass defaults.
    """

    load_environment()

    resolved: dict[str, Any] = {
        "window_length": window_length if window_length is not None else _env_int("WINDOW_LENGTH"),
        "window_stride": window_stride if window_stride is not None else _env_int("WINDOW_STRIDE"),
        "max_history": max_history if max_history is not None else _env_int("MAX_HISTORY"),
        "scale_policy": scale_policy or _env("SCALE_POLICY"),
        "fixed_scale": fixed_scale if fixed_scale is not None else _env_float("FIXED_SCALE"),
        "learning_rate": learning_rate if learning_rate is not None else _env_float("LEARNING_RATE"),
        "error_threshold": (
            error_threshold if error_threshold is not None else _env_float("ERROR_THRESHOLD")
        ),
        "max_iterations": max_iterations if max_iterations is not None else _env_int("MAX_ITERATIONS"),
        "hidden_layers": hidden_layers if hidden_layers is not None else _env("HIDDEN_LAYERS"),
        "execution_mode": execution_mode or _env("EXECUTION_MODE"),
        "seed": seed if seed is not None else _env_int("SEED"),
    }
    resolved.update(overrides)
    return load_config_from_mapping(resolved)


def load_config_from_mapping(payload: Mapping[str, Any]) -> PredictorConfig:
    """Create a configuration from a mapping, ignoring unknown and ``None`` values."""

    known = {item.name for item in fields(PredictorConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    data = {key: value for key, value in payload.items() if value is not None}
    return PredictorConfig(**data)


def load_config_from_file(path: str | Path) -> PredictorConfig:
    """Load configuration from a JSON or YAML file."""

    resolved = Path(path).expanduser().resolve()
    with resolved.open("r", encoding="utf-8") as handle:
        if resolved.suffix.lower() in {".yaml", ".yml"}:
            try:
                import yaml  # type: ignore[import-not-found]
            except ImportError as exc:  # pragma: no cover - optional dependency
                raise RuntimeError(
                    "PyYAML is required to load YAML configuration files."
                ) from exc
            payload = yaml.safe_load(handle) or {}
        else:
            payload = json.load(handle)

    if not isinstance(payload, Mapping):
        raise TypeError("Configuration file must define a mapping of values.")

    return load_config_from_mapping(payload)


__all__ = [
    "DEFAULT_FIXED_SCALE",
    "PredictorConfig",
    "SCALE_POLICIES",
    "build_config",
    "load_config_from_file",
    "load_config_from_mapping",
    "load_environment",
]
