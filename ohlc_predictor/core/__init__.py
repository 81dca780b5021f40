"""Core parsing, windowing and training components of the OHLC predictor."""

from ohlc_predictor.core.config import (
    PredictorConfig,
    build_config,
    load_config_from_file,
    load_environment,
)
from ohlc_predictor.core.exceptions import (
    AlreadyRunningError,
    EngineNotReadyError,
    EngineUnavailableError,
    InsufficientDataError,
    InvalidScaleError,
    MalformedFileError,
    MissingColumnsError,
    NoSequencesError,
    OrchestrationError,
    SeriesTooShortError,
    TrainingError,
    TrainingFailedError,
    UnsupportedFormatError,
    ValidationError,
)
from ohlc_predictor.core.orchestrator import TrainingOrchestrator, TrainingOutcome, TrainingState
from ohlc_predictor.core.predictors import (
    InlinePredictor,
    RetryPolicy,
    SequencePredictor,
    ThreadedPredictor,
    build_predictor,
    initialize_with_retry,
)
from ohlc_predictor.core.preprocessing import (
    WindowingConfig,
    build_training_sequences,
    denormalize,
    normalize,
    scale_down,
    scale_up,
)
from ohlc_predictor.core.series import (
    OhlcPoint,
    OhlcValues,
    Series,
    compute_scale_factor,
    load_series_file,
    parse_csv,
    parse_json,
    parse_series,
)
from ohlc_predictor.core.session import PredictionReport, PredictionSession
from ohlc_predictor.core.training import TrainingOptions, TrainingProgress, TrainingSummary

__all__ = [
    "AlreadyRunningError",
    "EngineNotReadyError",
    "EngineUnavailableError",
    "InlinePredictor",
    "InsufficientDataError",
    "InvalidScaleError",
    "MalformedFileError",
    "MissingColumnsError",
    "NoSequencesError",
    "OhlcPoint",
    "OhlcValues",
    "OrchestrationError",
    "PredictionReport",
    "PredictionSession",
    "PredictorConfig",
    "RetryPolicy",
    "SequencePredictor",
    "Series",
    "SeriesTooShortError",
    "ThreadedPredictor",
    "TrainingError",
    "TrainingFailedError",
    "TrainingOptions",
    "TrainingOrchestrator",
    "TrainingOutcome",
    "TrainingProgress",
    "TrainingState",
    "TrainingSummary",
    "UnsupportedFormatError",
    "ValidationError",
    "WindowingConfig",
    "build_config",
    "build_predictor",
    "build_training_sequences",
    "compute_scale_factor",
    "denormalize",
    "initialize_with_retry",
    "load_config_from_file",
    "load_environment",
    "load_series_file",
    "normalize",
    "parse_csv",
    "parse_json",
    "parse_series",
    "scale_down",
    "scale_up",
]
