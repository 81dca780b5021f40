"""Custom exceptions raised by the parsing, training and orchestration layers."""

from __future__ import annotations

from typing import Iterable


class ValidationError(ValueError):
    """Raised when an uploaded dataset cannot be turned into a usable series."""

    code = "validation_error"

    def __init__(self, message: str, *, warnings: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.warnings = tuple(warnings or ())


class MalformedFileError(ValidationError):
    """Raised when the payload lacks a header and at least one data row."""

    code = "malformed_file"


class MissingColumnsError(ValidationError):
    """Raised when one of the required OHLC columns is absent."""

    code = "missing_columns"

    def __init__(self, message: str, *, missing: Iterable[str]) -> None:
        super().__init__(message)
        self.missing = tuple(missing)


class InsufficientDataError(ValidationError):
    """Raised when fewer valid rows than the acceptance floor were found."""

    code = "insufficient_data"

    def __init__(
        self,
        message: str | None = None,
        *,
        count: int,
        minimum: int,
        warnings: Iterable[str] | None = None,
        source: str = "CSV",
    ) -> None:
        self.count = int(count)
        self.minimum = int(minimum)
        collected = tuple(warnings or ())
        details = message or (
            f"{source} must contain at least {self.minimum} valid data points. "
            f"Found {self.count} valid points."
        )
        if collected:
            details += "\n\nErrors found:\n" + "\n".join(collected)
        super().__init__(details, warnings=collected)


class UnsupportedFormatError(ValidationError):
    """Raised when the upload is neither CSV nor JSON."""

    code = "unsupported_format"


class OrchestrationError(RuntimeError):
    """Base class for failures of a training job."""

    code = "orchestration_error"


class EngineNotReadyError(OrchestrationError):
    """Raised when no initialised predictor is available."""

    code = "not_ready"


class SeriesTooShortError(OrchestrationError):
    """Raised when the series has too few points to build any window."""

    code = "insufficient_data"


class NoSequencesError(OrchestrationError):
    """Raised when windowing yields no training sequences."""

    code = "no_sequences"


class AlreadyRunningError(OrchestrationError):
    """Raised when a job is requested while another one is still active."""

    code = "already_running"


class InvalidScaleError(OrchestrationError):
    """Raised when the scale factor is zero, negative or undefined."""

    code = "invalid_scale"


class EngineUnavailableError(OrchestrationError):
    """Raised when the engine could not be initialised within the retry budget."""

    code = "engine_unavailable"

    def __init__(self, message: str | None = None, *, attempts: int) -> None:
        self.attempts = int(attempts)
        super().__init__(
            message or f"Sequence engine unavailable after {self.attempts} attempts."
        )


class TrainingFailedError(OrchestrationError):
    """Raised when the predictor failed while training or predicting."""

    code = "training_failed"


class TrainingError(RuntimeError):
    """Raised by predictors when the underlying engine faults."""


__all__ = [
    "AlreadyRunningError",
    "EngineNotReadyError",
    "EngineUnavailableError",
    "InsufficientDataError",
    "InvalidScaleError",
    "MalformedFileError",
    "MissingColumnsError",
    "NoSequencesError",
    "OrchestrationError",
    "SeriesTooShortError",
    "TrainingError",
    "TrainingFailedError",
    "UnsupportedFormatError",
    "ValidationError",
]
