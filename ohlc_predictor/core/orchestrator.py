"""Training job state machine sitting between a series and a predictor."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

try:  # Python 3.11+
    from enum import StrEnum as _BaseStrEnum
except ImportError:  # pragma: no cover - fallback for older interpreters
    from enum import Enum as _Enum

    class _BaseStrEnum(str, _Enum):
        """Fallback StrEnum implementation for Python < 3.11."""

        pass

from ohlc_predictor.core.exceptions import (
    AlreadyRunningError,
    EngineNotReadyError,
    InvalidScaleError,
    NoSequencesError,
    OrchestrationError,
    SeriesTooShortError,
    TrainingFailedError,
)
from ohlc_predictor.core.predictors import SequencePredictor
from ohlc_predictor.core.preprocessing import WindowingConfig, build_training_sequences, scale_up
from ohlc_predictor.core.series import OhlcValues, Series
from ohlc_predictor.core.training import TrainingOptions, TrainingProgress, TrainingSummary

LOGGER = logging.getLogger(__name__)


class TrainingState(_BaseStrEnum):
    """Lifecycle of a training job."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TrainingOutcome:
    """Result of a successful job: denormalised prediction plus diagnostics."""

    prediction: OhlcValues
    normalized: OhlcValues
    summary: TrainingSummary
    sequences: int
    progress_events: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "prediction": self.prediction.as_dict(),
            "normalized": self.normalized.as_dict(),
            "summary": self.summary.as_dict(),
            "sequences": self.sequences,
            "progress_events": self.progress_events,
        }


ProgressSink = Callable[[TrainingProgress], None]
ResultSink = Callable[[OhlcValues], None]
ErrorSink = Callable[[OrchestrationError], None]
StateSink = Callable[[TrainingState], None]


class TrainingOrchestrator:
    """Run one training job at a time and report exactly one terminal event.

    ``Idle -> Running -> Succeeded|Failed -> Idle``. Failed jobs stay in the
    ``Failed`` state for ``failure_reset_delay`` seconds so the error remains
    visible before the interface resets; successful jobs reset after
    ``success_reset_delay``. A precondition failure leaves the state at
    ``Idle``. Requests made while a job is not ``Idle`` are rejected with
    :class:`AlreadyRunningError`.
    """

    def __init__(
        self,
        predictor: SequencePredictor | None = None,
        *,
        windowing: WindowingConfig | None = None,
        options: TrainingOptions | None = None,
        min_points: int = 5,
        failure_reset_delay: float = 3.0,
        success_reset_delay: float = 0.0,
        on_progress: ProgressSink | None = None,
        on_result: ResultSink | None = None,
        on_error: ErrorSink | None = None,
        on_state_change: StateSink | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.predictor = predictor
        self.windowing = windowing or WindowingConfig()
        self.options = options or TrainingOptions()
        self.min_points = min_points
        self.failure_reset_delay = failure_reset_delay
        self.success_reset_delay = success_reset_delay
        self.on_progress = on_progress
        self.on_result = on_result
        self.on_error = on_error
        self.on_state_change = on_state_change
        self._sleep = sleep
        self._state = TrainingState.IDLE
        self._progress_events = 0
        self.last_progress: TrainingProgress | None = None
        self.last_error: OrchestrationError | None = None

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def is_idle(self) -> bool:
        return self._state is TrainingState.IDLE

    def _transition(self, state: TrainingState) -> None:
        LOGGER.debug("Training state %s -> %s", self._state, state)
        self._state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _emit_error(self, error: OrchestrationError) -> None:
        self.last_error = error
        if self.on_error is not None:
            self.on_error(error)

    def _forward_progress(self, progress: TrainingProgress) -> None:
        self._progress_events += 1
        self.last_progress = progress
        if self.on_progress is not None:
            self.on_progress(progress)

    def _check_preconditions(self, series: Series | None) -> None:
        error: OrchestrationError | None = None
        if self.predictor is None or not self.predictor.ready:
            error = EngineNotReadyError(
                "Sequence engine not initialized. The model backend may not have loaded correctly."
            )
        elif series is None:
            error = SeriesTooShortError("Please upload data first")
        elif len(series) < self.min_points:
            error = SeriesTooShortError(
                f"Invalid data format. Need at least {self.min_points} data points, got {len(series)}"
            )
        elif not (math.isfinite(series.scale) and series.scale > 0):
            error = InvalidScaleError(f"Scale factor must be positive, got {series.scale!r}")
        if error is not None:
            LOGGER.warning("Training request rejected: %s", error)
            self._emit_error(error)
            raise error

    async def _reset_after(self, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)
        self._transition(TrainingState.IDLE)

    async def _execute(self, series: Series) -> TrainingOutcome:
        assert self.predictor is not None
        sequences = build_training_sequences(series, self.windowing)
        if len(sequences) == 0:
            raise NoSequencesError("No valid training sequences generated")

        summary = await self.predictor.train(sequences, self.options, self._forward_progress)
        normalized = await self.predictor.run(sequences[-1])
        return TrainingOutcome(
            prediction=scale_up(normalized, series.scale),
            normalized=normalized,
            summary=summary,
            sequences=len(sequences),
            progress_events=self._progress_events,
        )

    async def _fail(self, error: OrchestrationError) -> None:
        self._transition(TrainingState.FAILED)
        LOGGER.warning("Training job failed: %s", error)
        self._emit_error(error)
        await self._reset_after(self.failure_reset_delay)

    async def _succeed(self, outcome: TrainingOutcome) -> None:
        self._transition(TrainingState.SUCCEEDED)
        LOGGER.info(
            "Training job finished after %s iterations (error=%.6f)",
            outcome.summary.iterations,
            outcome.summary.error,
        )
        if self.on_result is not None:
            self.on_result(outcome.prediction)
        await self._reset_after(self.success_reset_delay)

    async def run(self, series: Series | None) -> TrainingOutcome:
        """Train on ``series`` and return the denormalised next-step prediction."""

        if not self.is_idle:
            raise AlreadyRunningError(f"A training job is already active (state={self._state.value}).")
        self._check_preconditions(series)
        assert series is not None

        self._progress_events = 0
        self.last_progress = None
        self.last_error = None
        self._transition(TrainingState.RUNNING)
        LOGGER.info("Training started on %s data points", len(series))
        try:
            outcome = await self._execute(series)
        except OrchestrationError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            # TrainingError and faults the adapter did not wrap (a failing progress sink)
            failure = TrainingFailedError(str(exc) or exc.__class__.__name__)
            failure.__cause__ = exc
            await self._fail(failure)
            raise failure from exc
        else:
            await self._succeed(outcome)
            return outcome
        finally:
            if not self.is_idle:
                self._transition(TrainingState.IDLE)


__all__ = ["TrainingOrchestrator", "TrainingOutcome", "TrainingState"]
