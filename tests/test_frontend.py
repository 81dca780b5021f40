from __future__ import annotations

import sys
import threading
from pathlib import Path
from types import SimpleNamespace

import altair as alt

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ui.frontend import app as frontend


def test_describe_error_includes_skipped_lines() -> None:
    detail = {
        "detail": {
            "code": "insufficient_data",
            "message": "CSV must contain at least 50 valid data points. Found 3 valid points.",
            "warnings": ["Line 2: Invalid OHLC values"],
        }
    }
    assert frontend.describe_error(detail) == (
        "CSV must contain at least 50 valid data points. Found 3 valid points."
        "\n\nErrors found:\nLine 2: Invalid OHLC values"
    )
    assert frontend.describe_error({"detail": "Invalid or missing API key"}) == "Invalid or missing API key"
    assert frontend.describe_error(None) == "Request failed"


def test_api_error_keeps_status() -> None:
    error = frontend.ApiError(422, {"detail": {"code": "training_failed", "message": "diverged"}})
    assert error.status == 422
    assert str(error) == "diverged"


def test_format_price_and_trend_badge() -> None:
    assert frontend._format_price(1234.5) == "$1,234.50"
    assert frontend._format_price(None) == "—"
    assert "Up" in frontend._trend_badge("Up")
    assert "Down" in frontend._trend_badge("Down")
    assert frontend._trend_badge(None) == "—"


def test_upload_params_infer_format() -> None:
    assert frontend._upload_params("prices.JSON") == {"filename": "prices.JSON", "format": "json"}
    assert frontend._upload_params("prices.txt") == {"filename": "prices.txt"}


def test_ohlc_table() -> None:
    table = frontend._ohlc_table(
        {
            "last": {"open": 1, "high": 2, "low": 0.5, "close": 1.5},
            "predicted": {"open": 1.6, "high": 2.1, "low": 1.2, "close": 1.8},
        }
    )
    assert list(table.index) == ["Open", "High", "Low", "Close"]
    assert table.loc["Close", "Predicted"] == "$1.80"


def test_charts() -> None:
    assert frontend._history_chart([]) is None
    assert frontend._prediction_chart([]) is None

    history = frontend._history_chart([{"date": "2024-01-01", "close": 1.0}, {"date": "2024-01-02", "close": 2.0}])
    assert isinstance(history, alt.Chart)

    chart = frontend._prediction_chart(
        [
            {"date": "2024-01-01", "price": 1.0, "series": "Historical Price"},
            {"date": "2024-01-01", "price": 1.0, "series": "Prediction"},
            {"date": "2024-01-02", "price": 1.2, "series": "Prediction"},
        ]
    )
    spec = chart.to_dict()
    assert spec["encoding"]["strokeDash"]["field"] == "series"


def test_progress_caption() -> None:
    assert frontend._progress_caption([]) is None
    caption = frontend._progress_caption([{"percent": 40, "iteration": 400, "error": 0.031}])
    assert caption == "Training progress: 40% (iteration 400, error 0.0310)"


class _Upload:
    def __init__(self, name: str, file_id: str, payload: bytes = b"date,open,high,low,close\n") -> None:
        self.name = name
        self.file_id = file_id
        self.size = len(payload)
        self._payload = payload

    def getvalue(self) -> bytes:
        return self._payload


class _ProgressBar:
    def __init__(self) -> None:
        self.updates = []
        self.cleared = False

    def progress(self, value, text=None) -> None:
        self.updates.append((value, text))

    def empty(self) -> None:
        self.cleared = True


def _fake_streamlit(monkeypatch, state: dict | None = None) -> SimpleNamespace:
    bar = _ProgressBar()
    fake = SimpleNamespace(session_state=state if state is not None else {}, bar=bar)
    fake.progress = lambda value, text=None: bar
    monkeypatch.setattr(frontend, "st", fake)
    return fake


def test_failed_upload_is_retried_with_the_same_name(monkeypatch) -> None:
    fake = _fake_streamlit(monkeypatch)
    posted = []
    responses = [frontend.ApiError(400, {"detail": {"message": "too few rows"}}), {"dataset": {"rows": 50}}]

    def _request(path, **kwargs):
        posted.append((path, kwargs["params"]))
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(frontend, "_request", _request)

    first = _Upload("prices.csv", "file-1")
    assert frontend._should_upload(first)
    frontend._handle_upload(first)
    assert fake.session_state["upload_error"] == "too few rows"
    assert fake.session_state["uploaded_id"] is None

    fixed = _Upload("prices.csv", "file-2")
    assert frontend._should_upload(fixed)
    frontend._handle_upload(fixed)
    assert fake.session_state["upload_error"] is None
    assert fake.session_state["dataset_response"] == {"dataset": {"rows": 50}}
    assert not frontend._should_upload(fixed)
    assert frontend._should_upload(_Upload("prices.csv", "file-3"))
    assert not frontend._should_upload(None)
    assert posted == [("/datasets", {"filename": "prices.csv", "format": "csv"})] * 2


def test_upload_key_falls_back_to_name_and_size() -> None:
    upload = SimpleNamespace(name="prices.csv", size=42)
    assert frontend._upload_key(upload) == "prices.csv:42"
    assert frontend._upload_key(_Upload("prices.csv", "abc")) == "abc"


def test_training_progress_from_status() -> None:
    assert frontend._training_progress({"state": "idle", "progress": None}) is None
    assert frontend._training_progress({}) is None
    value, text = frontend._training_progress(
        {"state": "running", "progress": {"iteration": 400, "error": 0.031, "percent": 40}}
    )
    assert value == 40
    assert text == "Training progress: 40% (iteration 400, error 0.0310)"
    assert frontend._training_progress({"progress": {"iteration": 1, "error": 0.5, "percent": 130}})[0] == 100


def test_train_polls_status_while_the_job_runs(monkeypatch) -> None:
    fake = _fake_streamlit(monkeypatch, {"api_base": "http://api:8000/", "api_key": "secret"})
    polled = threading.Event()
    calls = []
    envelope = {"prediction": {"trend": "Up"}, "progress": []}

    def _request(path, **kwargs):
        calls.append((path, kwargs.get("method", "GET"), kwargs["connection"]))
        if path == "/training":
            polled.set()
            return {"state": "running", "progress": {"iteration": 500, "error": 0.02, "percent": 50}}
        assert polled.wait(timeout=5)
        return envelope

    monkeypatch.setattr(frontend, "_request", _request)
    frontend._handle_train(poll_interval=0.01)

    assert fake.session_state["prediction_response"] == envelope
    assert fake.session_state["training_error"] is None
    assert fake.bar.updates[0] == (50, "Training progress: 50% (iteration 500, error 0.0200)")
    assert fake.bar.cleared
    assert ("/train", "POST", ("http://api:8000", "secret")) in calls
    assert ("/training", "GET", ("http://api:8000", "secret")) in calls


def test_train_failure_is_shown(monkeypatch) -> None:
    fake = _fake_streamlit(monkeypatch)

    def _request(path, **kwargs):
        if path == "/train":
            raise frontend.ApiError(422, {"detail": {"code": "training_failed", "message": "diverged"}})
        return {"state": "failed", "progress": None}

    monkeypatch.setattr(frontend, "_request", _request)
    frontend._handle_train(poll_interval=0.01)

    assert fake.session_state["training_error"] == "diverged"
    assert fake.session_state["prediction_response"] is None
    assert fake.bar.cleared
