"""Next-day OHLC prediction from uploaded price histories."""

from ohlc_predictor.core import (
    PredictionSession,
    PredictorConfig,
    Series,
    TrainingOrchestrator,
    build_config,
    load_environment,
    parse_series,
)

__all__ = [
    "PredictionSession",
    "PredictorConfig",
    "Series",
    "TrainingOrchestrator",
    "build_config",
    "load_environment",
    "parse_series",
]
