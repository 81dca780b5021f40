import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

try:
    import torch
except Exception:  # pragma: no cover - optional dependency
    torch = None

from ohlc_predictor.core.config import PredictorConfig
from ohlc_predictor.core.deep_models import LSTMTimeStepEngine
from ohlc_predictor.core.exceptions import TrainingError
from ohlc_predictor.core.session import PredictionSession
from ohlc_predictor.core.training import TrainingOptions

pytestmark = pytest.mark.skipif(torch is None, reason="PyTorch is not installed")


def _synthetic_sequences(count: int = 6, length: int = 5) -> np.ndarray:
    rng = np.random.default_rng(42)
    steps = np.linspace(0, 3, count * length)
    close = 0.6 + 0.2 * np.sin(steps) + rng.normal(scale=0.01, size=steps.shape)
    frame = np.stack([close - 0.01, close + 0.02, close - 0.02, close], axis=1)
    return frame.reshape(count, length, 4)


def test_lstm_engine_reports_progress_and_predicts() -> None:
    events = []
    engine = LSTMTimeStepEngine(hidden_layers=(4, 4), seed=0, device="cpu")
    assert not engine.is_trained

    summary = engine.fit(
        _synthetic_sequences(),
        TrainingOptions(max_iterations=20, progress_every=5, error_threshold=1e-12),
        events.append,
    )

    assert summary.iterations == 20
    assert [event.iteration for event in events] == [5, 10, 15, 20]
    assert events[-1].fraction_complete == pytest.approx(1.0)
    assert engine.is_trained

    prediction = engine.predict_next(_synthetic_sequences()[-1])
    assert prediction.shape == (4,)
    assert np.isfinite(prediction).all()


def test_lstm_engine_stops_when_error_threshold_is_met() -> None:
    events = []
    engine = LSTMTimeStepEngine(hidden_layers=(4,), seed=0, device="cpu")
    summary = engine.fit(
        _synthetic_sequences(),
        TrainingOptions(max_iterations=50, progress_every=10, error_threshold=10.0),
        events.append,
    )
    assert summary.converged
    assert summary.iterations == 1
    assert [event.iteration for event in events] == [1]


def test_lstm_engine_rejects_bad_input() -> None:
    engine = LSTMTimeStepEngine(hidden_layers=(4,), device="cpu")
    with pytest.raises(TrainingError):
        engine.predict_next(np.zeros((5, 4)))
    with pytest.raises(TrainingError):
        engine.fit(np.zeros((3, 5, 3)), TrainingOptions(max_iterations=2))
    with pytest.raises(TrainingError):
        engine.fit(np.zeros((0, 5, 4)), TrainingOptions(max_iterations=2))


def test_session_end_to_end_with_worker_thread() -> None:
    lines = ["date,open,high,low,close"]
    start = date(2024, 1, 1)
    for offset in range(60):
        base = 100 + 5 * np.sin(offset / 6)
        lines.append(
            f"{(start + timedelta(days=offset)).isoformat()},{base:.2f},{base + 2:.2f},{base - 2:.2f},{base + 1:.2f}"
        )

    async def _runner():
        session = PredictionSession(PredictorConfig(max_iterations=15, seed=1, hidden_layers=(4,)))
        try:
            session.load("\n".join(lines), "csv")
            return await session.train()
        finally:
            await session.aclose()

    report = asyncio.run(_runner())

    assert report.outcome.summary.iterations <= 15
    assert report.outcome.sequences == 11
    assert all(np.isfinite(value) for value in report.prediction.as_tuple())
    assert report.as_dict()["trend"] in {"Up", "Down"}
