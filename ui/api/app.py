"""FastAPI application exposing the OHLC predictor session to the web UI."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Callable, Dict

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from ohlc_predictor.core.charts import history_points, prediction_chart_points
from ohlc_predictor.core.config import PredictorConfig, build_config
from ohlc_predictor.core.exceptions import (
    AlreadyRunningError,
    EngineNotReadyError,
    EngineUnavailableError,
    OrchestrationError,
    TrainingFailedError,
    ValidationError,
)
from ohlc_predictor.core.series import Series, detect_format
from ohlc_predictor.core.session import PredictionSession


api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


@lru_cache()
def _configured_api_keys() -> set[str]:
    """Return the set of API keys allowed to access the service."""

    raw_keys = os.getenv("OHLC_PREDICTOR_UI_API_KEYS", "")
    return {value.strip() for value in raw_keys.split(",") if value.strip()}


async def require_api_key(api_key: str | None = Security(api_key_scheme)) -> str:
    """Validate the provided API key against the configured allow list."""

    keys = _configured_api_keys()
    if not keys:
        return api_key or ""
    if not api_key or api_key not in keys:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key


class OhlcModel(BaseModel):
    """Open/high/low/close prices."""

    open: float = Field(..., description="Opening price.")
    high: float = Field(..., description="Highest price.")
    low: float = Field(..., description="Lowest price.")
    close: float = Field(..., description="Closing price.")


class LastPointModel(OhlcModel):
    """Most recent observation of the uploaded series."""

    date: str = Field(..., description="ISO calendar date of the observation.")


class DatasetSummary(BaseModel):
    """Summary of the currently installed dataset."""

    rows: int = Field(..., description="Number of accepted data points.")
    scale: float = Field(..., description="Scale factor used for normalisation.")
    start: str = Field(..., description="First date in the series.")
    end: str = Field(..., description="Last date in the series.")
    last_point: LastPointModel
    warnings: list[str] = Field(default_factory=list, description="Skipped-row diagnostics.")
    history: list[dict[str, Any]] = Field(
        default_factory=list, description="Chronological (date, close) pairs for charting."
    )


class DatasetEnvelope(BaseModel):
    status: str = Field("ok", description="Outcome of the request.")
    dataset: DatasetSummary


class ProgressModel(BaseModel):
    iteration: int = Field(..., description="Training iteration the report refers to.")
    error: float = Field(..., description="Training error at that iteration.")
    fraction_complete: float = Field(..., description="iteration / max_iterations.")
    percent: int = Field(..., description="Rounded percentage of the iteration budget used.")


class PredictionModel(BaseModel):
    """Prediction for the day after the dataset ends."""

    last: LastPointModel
    predicted: OhlcModel
    prediction_date: str = Field(..., description="Calendar day the prediction refers to.")
    trend: str = Field(..., description="Up when the predicted close exceeds the last close.")
    summary: dict[str, Any] = Field(default_factory=dict, description="Training run summary.")
    sequences: int = Field(..., description="Number of training sequences used.")
    scale: float = Field(..., description="Scale factor used to denormalise the output.")
    stale: bool = Field(False, description="True when the dataset changed during training.")
    chart: list[dict[str, Any]] = Field(
        default_factory=list, description="Recent closes plus the predicted close."
    )


class PredictionEnvelope(BaseModel):
    status: str = Field("ok", description="Outcome of the request.")
    prediction: PredictionModel
    progress: list[ProgressModel] = Field(default_factory=list)


class TrainingStatus(BaseModel):
    state: str = Field(..., description="Current training state.")
    can_train: bool = Field(..., description="Whether a new job may be started.")
    has_dataset: bool = Field(..., description="Whether a dataset is installed.")
    progress: ProgressModel | None = Field(None, description="Latest progress report.")
    error: str | None = Field(None, description="Message of the last failure, if any.")


def _summarise_dataset(series: Series) -> DatasetSummary:
    last = series.last.as_dict()
    return DatasetSummary(
        rows=len(series),
        scale=series.scale,
        start=series[0].date.isoformat(),
        end=series.last.date.isoformat(),
        last_point=LastPointModel(**last),
        warnings=list(series.warnings),
        history=history_points(series),
    )


def _validation_detail(exc: ValidationError) -> Dict[str, Any]:
    return {"code": exc.code, "message": str(exc), "warnings": list(exc.warnings)}


def _orchestration_status(exc: OrchestrationError) -> int:
    if isinstance(exc, AlreadyRunningError):
        return 409
    if isinstance(exc, (EngineUnavailableError, EngineNotReadyError)):
        return 503
    if isinstance(exc, TrainingFailedError):
        return 422
    return 400


def create_app(
    config: PredictorConfig | None = None,
    *,
    session_factory: Callable[[PredictorConfig], PredictionSession] | None = None,
) -> FastAPI:
    """Create a configured FastAPI application holding a single prediction session."""

    resolved_config = config or build_config()
    factory = session_factory or PredictionSession
    app = FastAPI(title="OHLC Predictor UI API", version="1.0.0")
    app.state.session = factory(resolved_config)

    def _session() -> PredictionSession:
        return app.state.session

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await _session().aclose()

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post(
        "/datasets",
        dependencies=[Depends(require_api_key)],
        response_model=DatasetEnvelope,
    )
    async def upload_dataset(
        request: Request,
        fmt: str | None = Query(None, alias="format", description="Payload format: csv or json."),
        filename: str | None = Query(None, description="Original file name used to infer the format."),
    ) -> DatasetEnvelope:
        session = _session()
        raw = await request.body()
        try:
            fmt = fmt or detect_format(filename or "")
            series = session.load(raw, fmt)
        except ValidationError as exc:
            session.clear()
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc
        return DatasetEnvelope(status="ok", dataset=_summarise_dataset(series))

    @app.get(
        "/datasets/current",
        dependencies=[Depends(require_api_key)],
        response_model=DatasetEnvelope,
    )
    async def current_dataset() -> DatasetEnvelope:
        series = _session().series
        if series is None:
            raise HTTPException(status_code=404, detail="No dataset uploaded")
        return DatasetEnvelope(status="ok", dataset=_summarise_dataset(series))

    @app.delete("/datasets/current", dependencies=[Depends(require_api_key)])
    async def clear_dataset() -> Dict[str, str]:
        _session().clear()
        return {"status": "ok"}

    @app.post(
        "/train",
        dependencies=[Depends(require_api_key)],
        response_model=PredictionEnvelope,
    )
    async def train() -> PredictionEnvelope:
        session = _session()
        try:
            report = await session.train()
        except OrchestrationError as exc:
            raise HTTPException(
                status_code=_orchestration_status(exc),
                detail={"code": exc.code, "message": str(exc)},
            ) from exc
        payload = report.as_dict()
        payload["chart"] = prediction_chart_points(report.series, report.prediction)
        return PredictionEnvelope(
            status="ok",
            prediction=PredictionModel(**payload),
            progress=[ProgressModel(**item.as_dict()) for item in session.progress_history],
        )

    @app.get(
        "/training",
        dependencies=[Depends(require_api_key)],
        response_model=TrainingStatus,
    )
    async def training_status() -> TrainingStatus:
        session = _session()
        orchestrator = session.orchestrator
        progress = orchestrator.last_progress
        error = orchestrator.last_error
        return TrainingStatus(
            state=session.state.value,
            can_train=session.can_train,
            has_dataset=session.series is not None,
            progress=ProgressModel(**progress.as_dict()) if progress is not None else None,
            error=str(error) if error is not None else None,
        )

    return app


__all__ = ["create_app", "require_api_key"]
