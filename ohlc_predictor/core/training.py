"""Value objects exchanged between predictors and the training orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping


@dataclass(frozen=True, slots=True)
class TrainingOptions:
    """Hyper-parameters handed to a predictor for one training run."""

    learning_rate: float = 0.005
    error_threshold: float = 0.02
    max_iterations: int = 1000
    progress_every: int = 10

    def __post_init__(self) -> None:
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive.")
        if self.error_threshold <= 0:
            raise ValueError("error_threshold must be positive.")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be a positive integer.")
        if self.progress_every < 1:
            raise ValueError("progress_every must be a positive integer.")

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TrainingOptions":
        return cls(
            learning_rate=float(payload["learning_rate"]),
            error_threshold=float(payload["error_threshold"]),
            max_iterations=int(payload["max_iterations"]),
            progress_every=int(payload["progress_every"]),
        )


@dataclass(frozen=True, slots=True)
class TrainingProgress:
    """Progress report emitted while a predictor trains."""

    iteration: int
    error: float
    fraction_complete: float

    @property
    def percent(self) -> int:
        return round(self.fraction_complete * 100)

    def as_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "error": self.error,
            "fraction_complete": self.fraction_complete,
            "percent": self.percent,
        }


@dataclass(frozen=True, slots=True)
class TrainingSummary:
    """Outcome of a completed training run."""

    iterations: int
    error: float
    converged: bool

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[TrainingProgress], None]


__all__ = ["ProgressCallback", "TrainingOptions", "TrainingProgress", "TrainingSummary"]
