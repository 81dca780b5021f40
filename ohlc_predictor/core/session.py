"""Per-user session holding the current dataset, predictor and training job."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from ohlc_predictor.core.charts import summarise_prediction
from ohlc_predictor.core.config import PredictorConfig
from ohlc_predictor.core.exceptions import (
    AlreadyRunningError,
    OrchestrationError,
    ValidationError,
)
from ohlc_predictor.core.orchestrator import (
    ResultSink,
    TrainingOrchestrator,
    TrainingOutcome,
    TrainingState,
)
from ohlc_predictor.core.predictors import (
    EngineFactory,
    SequencePredictor,
    build_predictor,
    initialize_with_retry,
)
from ohlc_predictor.core.series import OhlcValues, Series, detect_format, parse_series
from ohlc_predictor.core.training import TrainingProgress

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PredictionReport:
    """Prediction for the day after ``series`` ends, ready for presentation."""

    series: Series
    outcome: TrainingOutcome
    stale: bool = False

    @property
    def prediction(self) -> OhlcValues:
        return self.outcome.prediction

    def as_dict(self) -> dict[str, Any]:
        payload = summarise_prediction(self.series, self.outcome.prediction)
        payload.update(
            {
                "summary": self.outcome.summary.as_dict(),
                "sequences": self.outcome.sequences,
                "scale": self.series.scale,
                "stale": self.stale,
            }
        )
        return payload


class PredictionSession:
    """Owns the single current dataset and the lazily created predictor.

    Uploading replaces the dataset wholesale; a failed upload discards it so
    training stays disabled until the next successful upload. A job already
    running when the dataset changes is not cancelled, but its report is
    flagged as ``stale``.
    """

    def __init__(
        self,
        config: PredictorConfig | None = None,
        *,
        predictor: SequencePredictor | None = None,
        engine_factory: EngineFactory | None = None,
        on_progress: Callable[[TrainingProgress], None] | None = None,
        on_result: ResultSink | None = None,
        on_error: Callable[[OrchestrationError], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or PredictorConfig()
        self._predictor = predictor
        self._engine_factory = engine_factory
        self._sleep = sleep
        self._init_lock = asyncio.Lock()
        self._job_active = False
        self._external_progress = on_progress
        self._external_error = on_error
        self.series: Series | None = None
        self.generation = 0
        self.progress_history: list[TrainingProgress] = []
        self.last_report: PredictionReport | None = None
        self.orchestrator = TrainingOrchestrator(
            predictor,
            windowing=self.config.windowing,
            options=self.config.training_options,
            min_points=self.config.min_training_points,
            failure_reset_delay=self.config.failure_reset_delay,
            success_reset_delay=self.config.success_reset_delay,
            on_progress=self._handle_progress,
            on_result=on_result,
            on_error=self._handle_error,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Dataset management
    # ------------------------------------------------------------------
    @property
    def state(self) -> TrainingState:
        return self.orchestrator.state

    @property
    def can_train(self) -> bool:
        return self.series is not None and self.orchestrator.is_idle and not self._job_active

    def load(self, raw: bytes | str, fmt: str) -> Series:
        """Parse an upload and install it as the current dataset."""

        try:
            series = parse_series(
                raw,
                fmt,
                scale_policy=self.config.scale_policy,
                fixed_scale=self.config.fixed_scale,
                min_rows=self.config.min_series_length,
            )
        except ValidationError as exc:
            LOGGER.warning("Rejected %s upload: %s", fmt, exc)
            self.clear()
            raise
        self.series = series
        self.generation += 1
        self.last_report = None
        LOGGER.info(
            "Loaded %s points (%s to %s, scale=%.4f)",
            len(series),
            series[0].date.isoformat(),
            series.last.date.isoformat(),
            series.scale,
        )
        return series

    def load_file(self, path: str | Path) -> Series:
        resolved = Path(path).expanduser()
        try:
            fmt = detect_format(resolved)
        except ValidationError:
            self.clear()
            raise
        return self.load(resolved.read_bytes(), fmt)

    def clear(self) -> None:
        self.series = None
        self.last_report = None
        self.generation += 1

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def _handle_progress(self, progress: TrainingProgress) -> None:
        self.progress_history.append(progress)
        if self._external_progress is not None:
            self._external_progress(progress)

    def _handle_error(self, error: OrchestrationError) -> None:
        if self._external_error is not None:
            self._external_error(error)

    async def ensure_predictor(self) -> SequencePredictor:
        """Create and initialise the predictor once, retrying while its engine loads."""

        async with self._init_lock:
            if self._predictor is None:
                self._predictor = build_predictor(self.config, self._engine_factory)
            if not self._predictor.ready:
                result = await initialize_with_retry(
                    self._predictor, self.config.retry_policy, sleep=self._sleep
                )
                LOGGER.debug(
                    "Predictor %s initialised after %s attempt(s)",
                    self._predictor.name,
                    result.attempts,
                )
            self.orchestrator.predictor = self._predictor
        return self._predictor

    async def train(self) -> PredictionReport:
        """Train on the current dataset and predict the next day's OHLC values."""

        if self._job_active or not self.orchestrator.is_idle:
            raise AlreadyRunningError("A training job is already active.")
        self._job_active = True
        try:
            series = self.series
            generation = self.generation
            try:
                await self.ensure_predictor()
            except OrchestrationError as exc:
                self._handle_error(exc)
                raise
            self.progress_history = []
            outcome = await self.orchestrator.run(series)
        finally:
            self._job_active = False

        assert series is not None
        stale = generation != self.generation
        if stale:
            LOGGER.warning("Dataset replaced during training; prediction refers to the previous upload.")
        report = PredictionReport(series=series, outcome=outcome, stale=stale)
        if not stale:
            self.last_report = report
        return report

    async def aclose(self) -> None:
        if self._predictor is not None:
            await self._predictor.aclose()


__all__ = ["PredictionReport", "PredictionSession"]
