"""Recurrent time-step model used as the default sequence engine."""

from __future__ import annotations

import logging
import math
from typing import Any, Optional, Sequence

import numpy as np

from ohlc_predictor.core.exceptions import TrainingError
from ohlc_predictor.core.training import (
    ProgressCallback,
    TrainingOptions,
    TrainingProgress,
    TrainingSummary,
)

LOGGER = logging.getLogger(__name__)

try:  # Optional dependency
    import torch
    from torch import Tensor, nn
except Exception:  # pragma: no cover - torch is optional
    torch = None  # type: ignore
    nn = None  # type: ignore
    Tensor = Any  # type: ignore


def _require_torch() -> None:
    if torch is None:  # pragma: no cover - guarded by runtime check
        raise ImportError(
            "PyTorch is required for the LSTM time-step engine. Install torch>=2.0 to train models."
        )


def _to_float_array(data: Any, *, ndim: int, width: int) -> np.ndarray:
    array = np.asarray(data, dtype=np.float32)
    if array.ndim != ndim or array.shape[-1] != width:
        raise TrainingError(
            f"Expected a {ndim}-dimensional array with {width} features, got shape {array.shape}."
        )
    return array


if nn is not None:

    class _TimeStepNetwork(nn.Module):
        """Stacked LSTM layers followed by a linear read-out at every step."""

        def __init__(self, input_size: int, hidden_layers: Sequence[int], output_size: int) -> None:
            super().__init__()
            layers = []
            in_size = input_size
            for hidden_size in hidden_layers:
                layers.append(nn.LSTM(input_size=in_size, hidden_size=hidden_size, batch_first=True))
                in_size = hidden_size
            self.layers = nn.ModuleList(layers)
            self.head = nn.Linear(in_size, output_size)

        def forward(self, x: Tensor) -> Tensor:  # type: ignore[override]
            output = x
            for layer in self.layers:
                output, _ = layer(output)
            return self.head(output)


class LSTMTimeStepEngine:
    """Learns to predict step ``t + 1`` of a window from steps ``<= t``.

    The whole set of windows is used as one batch per iteration. Training stops
    once the mean squared error drops to ``error_threshold`` or after
    ``max_iterations`` iterations.
    """

    name = "lstm_time_step"

    def __init__(
        self,
        *,
        input_size: int = 4,
        hidden_layers: Sequence[int] = (8, 8),
        output_size: int = 4,
        device: str | None = None,
        seed: int | None = None,
    ) -> None:
        _require_torch()
        if not hidden_layers:
            raise ValueError("At least one hidden layer is required.")
        self.input_size = input_size
        self.hidden_layers = tuple(int(size) for size in hidden_layers)
        self.output_size = output_size
        self.device_name = device or ("cuda" if torch.cuda.is_available() else "cpu")  # type: ignore[union-attr]
        self.device = torch.device(self.device_name)  # type: ignore[union-attr]
        self.seed = seed
        self._model: Optional[nn.Module] = None

    @property
    def is_trained(self) -> bool:
        return self._model is not None

    def _build_model(self) -> nn.Module:
        return _TimeStepNetwork(self.input_size, self.hidden_layers, self.output_size)

    def fit(
        self,
        sequences: Any,
        options: TrainingOptions,
        on_progress: ProgressCallback | None = None,
    ) -> TrainingSummary:
        _require_torch()
        data = _to_float_array(sequences, ndim=3, width=self.input_size)
        if data.shape[0] == 0 or data.shape[1] < 2:
            raise TrainingError("At least one training sequence with two or more steps is required.")

        if self.seed is not None:
            torch.manual_seed(self.seed)  # type: ignore[union-attr]
        model = self._build_model().to(self.device)
        inputs = torch.from_numpy(np.ascontiguousarray(data[:, :-1, :])).to(self.device)  # type: ignore[union-attr]
        targets = torch.from_numpy(np.ascontiguousarray(data[:, 1:, : self.output_size])).to(self.device)  # type: ignore[union-attr]
        optimizer = torch.optim.Adam(model.parameters(), lr=options.learning_rate)  # type: ignore[union-attr]
        criterion = nn.MSELoss()

        error = math.inf
        iteration = 0
        for iteration in range(1, options.max_iterations + 1):
            model.train()
            optimizer.zero_grad()
            loss = criterion(model(inputs), targets)
            loss.backward()
            optimizer.step()
            error = float(loss.item())
            if not math.isfinite(error):
                raise TrainingError(f"Training diverged at iteration {iteration} (error={error}).")

            converged = error <= options.error_threshold
            last_iteration = converged or iteration == options.max_iterations
            if on_progress is not None and (iteration % options.progress_every == 0 or last_iteration):
                on_progress(
                    TrainingProgress(
                        iteration=iteration,
                        error=error,
                        fraction_complete=iteration / options.max_iterations,
                    )
                )
            if converged:
                break

        self._model = model
        summary = TrainingSummary(
            iterations=iteration,
            error=error,
            converged=error <= options.error_threshold,
        )
        LOGGER.debug(
            "Trained %s on %s sequences: %s iterations, error %.6f",
            self.__class__.__name__,
            data.shape[0],
            summary.iterations,
            summary.error,
        )
        return summary

    def predict_next(self, sequence: Any) -> np.ndarray:
        """Return the model output for the step following ``sequence``."""

        _require_torch()
        if self._model is None:
            raise TrainingError("Model has not been trained yet.")
        array = _to_float_array(sequence, ndim=2, width=self.input_size)
        tensor = torch.from_numpy(np.ascontiguousarray(array[None, ...])).to(self.device)  # type: ignore[union-attr]
        self._model.eval()
        with torch.no_grad():  # type: ignore[union-attr]
            output = self._model(tensor)[0, -1, :].cpu().numpy()
        return output.astype(np.float64)


__all__ = ["LSTMTimeStepEngine"]
