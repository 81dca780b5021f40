"""Predictor adapters wrapping a trainable sequence engine.

Two deployments share the :class:`SequencePredictor` contract:

* :class:`InlinePredictor` trains on the caller's thread and blocks the event
  loop until the engine returns.
* :class:`ThreadedPredictor` owns the engine inside a dedicated worker thread
  and talks to it exclusively through messages, mirroring a web worker.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Protocol

import numpy as np

from ohlc_predictor.core.exceptions import (
    EngineNotReadyError,
    EngineUnavailableError,
    TrainingError,
)
from ohlc_predictor.core.series import OhlcValues
from ohlc_predictor.core.training import (
    ProgressCallback,
    TrainingOptions,
    TrainingProgress,
    TrainingSummary,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ohlc_predictor.core.config import PredictorConfig

LOGGER = logging.getLogger(__name__)

EXECUTION_MODES: tuple[str, ...] = ("thread", "inline")


class SequenceEngine(Protocol):
    """Trainable model that maps a window of OHLC steps to the next step."""

    def fit(
        self,
        sequences: Any,
        options: TrainingOptions,
        on_progress: ProgressCallback | None = None,
    ) -> TrainingSummary:
        ...

    def predict_next(self, sequence: Any) -> Any:
        ...


EngineFactory = Callable[[], SequenceEngine]


class SequencePredictor(abc.ABC):
    """Asynchronous train/run boundary used by the orchestrator."""

    name: str = "predictor"

    @property
    @abc.abstractmethod
    def ready(self) -> bool:
        """Whether :meth:`initialize` completed successfully."""

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Create the engine; raise :class:`EngineNotReadyError` when it cannot load yet."""

    @abc.abstractmethod
    async def train(
        self,
        sequences: np.ndarray,
        options: TrainingOptions,
        on_progress: ProgressCallback | None = None,
    ) -> TrainingSummary:
        """Train on ``sequences``; failures surface as :class:`TrainingError`."""

    @abc.abstractmethod
    async def run(self, sequence: np.ndarray) -> OhlcValues:
        """Return the normalised prediction for the step after ``sequence``."""

    async def aclose(self) -> None:
        return None


def _as_values(raw: Any) -> OhlcValues:
    try:
        return OhlcValues.from_sequence([float(value) for value in np.ravel(raw)])
    except (TypeError, ValueError) as exc:
        raise TrainingError(f"Engine returned an invalid prediction: {exc}") from exc


class InlinePredictor(SequencePredictor):
    """Runs the engine synchronously on the calling thread."""

    name = "inline"

    def __init__(self, engine_factory: EngineFactory) -> None:
        self._factory = engine_factory
        self._engine: SequenceEngine | None = None

    @property
    def ready(self) -> bool:
        return self._engine is not None

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        try:
            self._engine = self._factory()
        except Exception as exc:
            raise EngineNotReadyError(str(exc) or exc.__class__.__name__) from exc

    def _require_engine(self) -> SequenceEngine:
        if self._engine is None:
            raise EngineNotReadyError("Sequence engine not initialized")
        return self._engine

    async def train(
        self,
        sequences: np.ndarray,
        options: TrainingOptions,
        on_progress: ProgressCallback | None = None,
    ) -> TrainingSummary:
        engine = self._require_engine()
        try:
            return engine.fit(np.array(sequences, dtype=np.float64, copy=True), options, on_progress)
        except TrainingError:
            raise
        except Exception as exc:
            raise TrainingError(str(exc)) from exc

    async def run(self, sequence: np.ndarray) -> OhlcValues:
        engine = self._require_engine()
        try:
            raw = engine.predict_next(np.array(sequence, dtype=np.float64, copy=True))
        except TrainingError:
            raise
        except Exception as exc:
            raise TrainingError(str(exc)) from exc
        return _as_values(raw)


class ThreadedPredictor(SequencePredictor):
    """Keeps the engine in a worker thread reached only by message passing.

    Requests are dictionaries placed on the worker's inbox. The worker answers
    on a per-request asyncio queue with ``initialized``, ``progress``,
    ``complete``, ``prediction`` or ``error`` messages, in emission order.
    Arrays are copied before they cross the boundary.
    """

    name = "thread"

    def __init__(self, engine_factory: EngineFactory, *, thread_name: str = "ohlc-predictor-worker") -> None:
        self._factory = engine_factory
        self._thread_name = thread_name
        self._inbox: queue.Queue[dict[str, Any] | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _worker_main(self) -> None:
        engine: SequenceEngine | None = None
        while True:
            message = self._inbox.get()
            if message is None:
                break
            reply: Callable[[dict[str, Any]], None] = message["reply"]
            kind = message["type"]

            if kind == "init":
                try:
                    engine = self._factory()
                except Exception as exc:
                    reply({"type": "initialized", "success": False, "message": str(exc)})
                else:
                    reply({"type": "initialized", "success": True})
                continue

            if engine is None:
                reply({"type": "error", "message": "Sequence engine not initialized"})
                continue

            if kind == "train":
                try:
                    options = TrainingOptions.from_mapping(message["options"])
                    summary = engine.fit(
                        message["sequences"],
                        options,
                        lambda progress: reply({"type": "progress", **progress.as_dict()}),
                    )
                except Exception as exc:
                    reply({"type": "error", "message": str(exc)})
                else:
                    reply({"type": "complete", "summary": summary.as_dict()})
            elif kind == "run":
                try:
                    raw = engine.predict_next(message["sequence"])
                    values = [float(value) for value in np.ravel(raw)]
                except Exception as exc:
                    reply({"type": "error", "message": str(exc)})
                else:
                    reply({"type": "prediction", "values": values})
            else:
                reply({"type": "error", "message": f"Unknown request type: {kind}"})

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------
    def _ensure_thread(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker_main, name=self._thread_name, daemon=True)
        self._thread.start()

    def _post(self, message: Mapping[str, Any]) -> asyncio.Queue[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        def reply(payload: dict[str, Any]) -> None:
            try:
                loop.call_soon_threadsafe(outbox.put_nowait, payload)
            except RuntimeError:
                LOGGER.debug("Dropping %s message from worker: event loop closed", payload.get("type"))

        self._ensure_thread()
        self._inbox.put({**message, "reply": reply})
        return outbox

    async def initialize(self) -> None:
        if self._ready:
            return
        outbox = self._post({"type": "init"})
        response = await outbox.get()
        if not response.get("success"):
            raise EngineNotReadyError(response.get("message") or "Sequence engine failed to initialize")
        self._ready = True

    async def train(
        self,
        sequences: np.ndarray,
        options: TrainingOptions,
        on_progress: ProgressCallback | None = None,
    ) -> TrainingSummary:
        if not self._ready:
            raise EngineNotReadyError("Sequence engine not initialized")
        outbox = self._post(
            {
                "type": "train",
                "sequences": np.array(sequences, dtype=np.float64, copy=True),
                "options": options.as_dict(),
            }
        )
        while True:
            message = await outbox.get()
            kind = message["type"]
            if kind == "progress":
                if on_progress is not None:
                    on_progress(
                        TrainingProgress(
                            iteration=int(message["iteration"]),
                            error=float(message["error"]),
                            fraction_complete=float(message["fraction_complete"]),
                        )
                    )
                continue
            if kind == "complete":
                return TrainingSummary(**message["summary"])
            raise TrainingError(message.get("message") or "Training failed in worker")

    async def run(self, sequence: np.ndarray) -> OhlcValues:
        if not self._ready:
            raise EngineNotReadyError("Sequence engine not initialized")
        outbox = self._post({"type": "run", "sequence": np.array(sequence, dtype=np.float64, copy=True)})
        message = await outbox.get()
        if message["type"] != "prediction":
            raise TrainingError(message.get("message") or "Prediction failed in worker")
        return _as_values(message["values"])

    async def aclose(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._inbox.put(None)
        await asyncio.to_thread(thread.join, 5.0)
        self._thread = None
        self._ready = False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry schedule for engine initialisation."""

    max_attempts: int = 10
    delay: float = 0.5
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.delay < 0:
            raise ValueError("delay must not be negative.")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1.")

    def delay_for(self, attempt: int) -> float:
        return self.delay * (self.backoff ** max(attempt - 1, 0))


@dataclass(frozen=True, slots=True)
class InitializationResult:
    """Outcome of :func:`initialize_with_retry`."""

    attempts: int
    errors: tuple[str, ...] = ()


async def initialize_with_retry(
    predictor: SequencePredictor,
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> InitializationResult:
    """Initialise ``predictor``, polling while its engine is not ready.

    Raises :class:`EngineUnavailableError` once ``policy.max_attempts`` is
    exhausted.
    """

    policy = policy or RetryPolicy()
    errors: list[str] = []
    for attempt in range(1, policy.max_attempts + 1):
        try:
            await predictor.initialize()
        except EngineNotReadyError as exc:
            errors.append(str(exc))
            if attempt >= policy.max_attempts:
                LOGGER.warning(
                    "Predictor %s unavailable after %s attempts: %s",
                    predictor.name,
                    attempt,
                    errors[-1],
                )
                raise EngineUnavailableError(attempts=attempt) from exc
            wait = policy.delay_for(attempt)
            LOGGER.debug(
                "Predictor %s not ready (%s/%s), retrying in %.2fs: %s",
                predictor.name,
                attempt,
                policy.max_attempts,
                wait,
                exc,
            )
            await sleep(wait)
        else:
            return InitializationResult(attempts=attempt, errors=tuple(errors))
    raise EngineUnavailableError(attempts=policy.max_attempts)  # pragma: no cover - loop always returns


def default_engine_factory(config: "PredictorConfig") -> EngineFactory:
    from ohlc_predictor.core.deep_models import LSTMTimeStepEngine

    return partial(LSTMTimeStepEngine, hidden_layers=config.hidden_layers, seed=config.seed)


def build_predictor(
    config: "PredictorConfig",
    engine_factory: EngineFactory | None = None,
) -> SequencePredictor:
    """Create the predictor variant selected by ``config.execution_mode``."""

    factory = engine_factory or default_engine_factory(config)
    if config.execution_mode == "inline":
        return InlinePredictor(factory)
    return ThreadedPredictor(factory)


__all__ = [
    "EXECUTION_MODES",
    "EngineFactory",
    "InitializationResult",
    "InlinePredictor",
    "RetryPolicy",
    "SequenceEngine",
    "SequencePredictor",
    "ThreadedPredictor",
    "build_predictor",
    "default_engine_factory",
    "initialize_with_retry",
]
