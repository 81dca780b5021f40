from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ohlc_predictor.core.config import PredictorConfig
from ohlc_predictor.core.exceptions import (
    EngineNotReadyError,
    EngineUnavailableError,
    TrainingError,
)
from ohlc_predictor.core.predictors import (
    InlinePredictor,
    RetryPolicy,
    SequencePredictor,
    ThreadedPredictor,
    build_predictor,
    default_engine_factory,
    initialize_with_retry,
)
from ohlc_predictor.core.training import TrainingOptions, TrainingProgress, TrainingSummary


class _StubEngine:
    def __init__(self, *, fail_fit: Exception | None = None, fail_predict: Exception | None = None) -> None:
        self.fail_fit = fail_fit
        self.fail_predict = fail_predict
        self.seen = None

    def fit(self, sequences, options, on_progress=None):
        self.seen = sequences
        sequences[...] = 0.0
        if self.fail_fit is not None:
            raise self.fail_fit
        for iteration in (1, 2, 3):
            if on_progress is not None:
                on_progress(TrainingProgress(iteration, 1.0 / iteration, iteration / 3))
        return TrainingSummary(iterations=3, error=1.0 / 3, converged=False)

    def predict_next(self, sequence):
        if self.fail_predict is not None:
            raise self.fail_predict
        return np.array([0.1, 0.2, 0.3, 0.4])


def _sequences() -> np.ndarray:
    return np.full((2, 5, 4), 0.5)


@pytest.mark.parametrize("predictor_cls", [InlinePredictor, ThreadedPredictor])
def test_predictor_trains_and_runs(predictor_cls) -> None:
    events: list[TrainingProgress] = []
    sequences = _sequences()

    async def _runner():
        predictor = predictor_cls(_StubEngine)
        assert not predictor.ready
        await predictor.initialize()
        assert predictor.ready
        summary = await predictor.train(sequences, TrainingOptions(max_iterations=3), events.append)
        values = await predictor.run(sequences[-1])
        await predictor.aclose()
        return summary, values

    summary, values = asyncio.run(_runner())

    assert summary.iterations == 3
    assert summary.error == pytest.approx(1.0 / 3)
    assert summary.converged is False
    assert [event.iteration for event in events] == [1, 2, 3]
    assert events[-1].percent == 100
    assert values.as_tuple() == pytest.approx((0.1, 0.2, 0.3, 0.4))
    # The engine mutates its copy; the caller's array is untouched.
    assert np.all(sequences == 0.5)


@pytest.mark.parametrize("predictor_cls", [InlinePredictor, ThreadedPredictor])
def test_engine_failures_surface_as_training_errors(predictor_cls) -> None:
    async def _runner():
        predictor = predictor_cls(lambda: _StubEngine(fail_fit=ValueError("boom")))
        await predictor.initialize()
        try:
            await predictor.train(_sequences(), TrainingOptions())
        finally:
            await predictor.aclose()

    with pytest.raises(TrainingError, match="boom"):
        asyncio.run(_runner())


@pytest.mark.parametrize("predictor_cls", [InlinePredictor, ThreadedPredictor])
def test_prediction_failures_surface_as_training_errors(predictor_cls) -> None:
    async def _runner():
        predictor = predictor_cls(lambda: _StubEngine(fail_predict=RuntimeError("no output")))
        await predictor.initialize()
        try:
            await predictor.run(np.zeros((5, 4)))
        finally:
            await predictor.aclose()

    with pytest.raises(TrainingError, match="no output"):
        asyncio.run(_runner())


@pytest.mark.parametrize("predictor_cls", [InlinePredictor, ThreadedPredictor])
def test_requests_before_initialisation_are_rejected(predictor_cls) -> None:
    predictor = predictor_cls(_StubEngine)

    with pytest.raises(EngineNotReadyError):
        asyncio.run(predictor.train(_sequences(), TrainingOptions()))
    with pytest.raises(EngineNotReadyError):
        asyncio.run(predictor.run(np.zeros((5, 4))))


def test_threaded_initialisation_failure_is_not_ready() -> None:
    def _factory():
        raise RuntimeError("backend still loading")

    async def _runner():
        predictor = ThreadedPredictor(_factory)
        try:
            await predictor.initialize()
        finally:
            await predictor.aclose()

    with pytest.raises(EngineNotReadyError, match="backend still loading"):
        asyncio.run(_runner())


@pytest.mark.parametrize(
    "error, message",
    [(ImportError("torch missing"), "torch missing"), (RuntimeError("CUDA unavailable"), "CUDA unavailable")],
)
def test_inline_factory_failure_is_not_ready(error, message) -> None:
    def _factory():
        raise error

    predictor = InlinePredictor(_factory)
    with pytest.raises(EngineNotReadyError, match=message):
        asyncio.run(predictor.initialize())
    assert not predictor.ready


class _FlakyPredictor(SequencePredictor):
    name = "flaky"

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise EngineNotReadyError(f"attempt {self.calls}")
        self._ready = True

    async def train(self, sequences, options, on_progress=None):  # pragma: no cover - unused
        raise NotImplementedError

    async def run(self, sequence):  # pragma: no cover - unused
        raise NotImplementedError


def test_initialize_with_retry_succeeds_after_failures() -> None:
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    predictor = _FlakyPredictor(failures=2)
    result = asyncio.run(initialize_with_retry(predictor, RetryPolicy(max_attempts=5, delay=0.5), sleep=_sleep))

    assert result.attempts == 3
    assert result.errors == ("attempt 1", "attempt 2")
    assert sleeps == [0.5, 0.5]
    assert predictor.ready


def test_initialize_with_retry_gives_up() -> None:
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    predictor = _FlakyPredictor(failures=10)
    with pytest.raises(EngineUnavailableError) as excinfo:
        asyncio.run(initialize_with_retry(predictor, RetryPolicy(max_attempts=3, delay=0.25, backoff=2.0), sleep=_sleep))

    assert excinfo.value.attempts == 3
    assert excinfo.value.code == "engine_unavailable"
    assert sleeps == [0.25, 0.5]
    assert predictor.calls == 3


def test_build_predictor_respects_execution_mode() -> None:
    assert isinstance(build_predictor(PredictorConfig(execution_mode="inline"), _StubEngine), InlinePredictor)
    assert isinstance(build_predictor(PredictorConfig(), _StubEngine), ThreadedPredictor)


def test_default_engine_factory_carries_model_settings() -> None:
    factory = default_engine_factory(PredictorConfig(hidden_layers=(16, 4), seed=7))
    assert factory.keywords == {"hidden_layers": (16, 4), "seed": 7}
