"""Streamlit dashboard for uploading OHLC data and viewing next-day predictions."""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import PurePath
from typing import Any, Dict, List, Mapping, Tuple

import altair as alt
import pandas as pd
import requests
import streamlit as st

DEFAULT_API_URL = os.getenv("OHLC_PREDICTOR_API_URL", "http://localhost:8000")
DEFAULT_API_KEY = os.getenv("OHLC_PREDICTOR_UI_API_KEY", "")
ACCEPTED_SUFFIXES = ["csv", "json"]
TRAINING_POLL_SECONDS = 0.5

SESSION_DEFAULTS: Dict[str, Any] = {
    "api_base": DEFAULT_API_URL,
    "api_key": DEFAULT_API_KEY,
    "dataset_response": None,
    "prediction_response": None,
    "upload_error": None,
    "training_error": None,
    "uploaded_id": None,
}


class ApiError(RuntimeError):
    """Raised when the API answers with a non-success status."""

    def __init__(self, status: int, detail: Any) -> None:
        super().__init__(describe_error(detail))
        self.status = status
        self.detail = detail


def describe_error(detail: Any) -> str:
    """Turn an API error ``detail`` into text suitable for ``st.error``."""

    if isinstance(detail, Mapping):
        if "detail" in detail:
            return describe_error(detail["detail"])
        message = str(detail.get("message") or "Request failed")
        warnings = [str(item) for item in detail.get("warnings") or []]
        if warnings and "Errors found:" not in message:
            message = message + "\n\nErrors found:\n" + "\n".join(warnings)
        return message
    if detail is None:
        return "Request failed"
    return str(detail)


def _format_price(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "—"


def _trend_badge(trend: str | None) -> str:
    if trend == "Up":
        return ":green[Up ▲]"
    if trend == "Down":
        return ":red[Down ▼]"
    return "—"


def _ohlc_table(prediction: Mapping[str, Any]) -> pd.DataFrame:
    """Side-by-side table of the last known values and the prediction."""

    last = prediction.get("last") or {}
    predicted = prediction.get("predicted") or {}
    rows = []
    for field in ("open", "high", "low", "close"):
        rows.append(
            {
                "Field": field.capitalize(),
                "Last known": _format_price(last.get(field)),
                "Predicted": _format_price(predicted.get(field)),
            }
        )
    return pd.DataFrame(rows).set_index("Field")


def _history_chart(history: List[Mapping[str, Any]]) -> alt.Chart | None:
    if not history:
        return None
    frame = pd.DataFrame(history)
    frame["date"] = pd.to_datetime(frame["date"])
    return (
        alt.Chart(frame)
        .mark_line()
        .encode(
            x=alt.X("date:T", title="Date"),
            y=alt.Y("close:Q", title="Close", scale=alt.Scale(zero=False)),
            tooltip=[alt.Tooltip("date:T"), alt.Tooltip("close:Q", format=",.2f")],
        )
        .properties(height=320)
    )


def _prediction_chart(points: List[Mapping[str, Any]]) -> alt.Chart | None:
    """Recent closes as a solid line, the predicted segment dashed."""

    if not points:
        return None
    frame = pd.DataFrame(points)
    frame["date"] = pd.to_datetime(frame["date"])
    return (
        alt.Chart(frame)
        .mark_line(point=True)
        .encode(
            x=alt.X("date:T", title="Date"),
            y=alt.Y("price:Q", title="Close", scale=alt.Scale(zero=False)),
            color=alt.Color("series:N", title=None),
            strokeDash=alt.StrokeDash("series:N", legend=None),
            tooltip=[
                alt.Tooltip("date:T"),
                alt.Tooltip("series:N"),
                alt.Tooltip("price:Q", format=",.2f"),
            ],
        )
        .properties(height=320)
    )


def _progress_caption(progress: List[Mapping[str, Any]]) -> str | None:
    if not progress:
        return None
    latest = progress[-1]
    return (
        f"Training progress: {latest.get('percent', 0)}% "
        f"(iteration {latest.get('iteration')}, error {float(latest.get('error', 0.0)):.4f})"
    )


def _training_progress(status: Mapping[str, Any]) -> Tuple[int, str] | None:
    """Progress bar value and caption from a ``GET /training`` payload."""

    progress = status.get("progress")
    if not progress:
        return None
    percent = min(100, max(0, int(progress.get("percent") or 0)))
    return percent, _progress_caption([progress]) or ""


def _upload_params(filename: str) -> Dict[str, str]:
    params = {"filename": filename}
    suffix = PurePath(filename).suffix.lower().lstrip(".")
    if suffix in ACCEPTED_SUFFIXES:
        params["format"] = suffix
    return params


def _connection() -> Tuple[str, str]:
    base_url = (st.session_state.get("api_base") or DEFAULT_API_URL).rstrip("/")
    return base_url, st.session_state.get("api_key") or ""


def _request(
    path: str,
    *,
    method: str = "GET",
    params: Dict[str, Any] | None = None,
    data: bytes | None = None,
    connection: Tuple[str, str] | None = None,
) -> Dict[str, Any]:
    # Worker threads cannot read st.session_state, so they pass ``connection``.
    base_url, api_key = connection or _connection()
    url = f"{base_url}{path}"
    headers: Dict[str, str] = {}
    if api_key:
        headers["X-API-Key"] = api_key
    if data is not None:
        headers["Content-Type"] = "application/octet-stream"

    try:
        response = requests.request(
            method,
            url,
            params=params,
            data=data,
            headers=headers,
            timeout=600,
        )
    except requests.RequestException as exc:  # pragma: no cover - network error path
        raise ApiError(0, f"Request to {url} failed: {exc}") from exc
    if response.status_code >= 400:
        try:
            detail = response.json()
        except ValueError:
            detail = response.text
        raise ApiError(response.status_code, detail)
    return response.json()


def _upload_key(uploaded: Any) -> str:
    """Identity of one upload; a re-upload under the same name gets a new key."""

    file_id = getattr(uploaded, "file_id", None)
    if file_id:
        return str(file_id)
    return f"{uploaded.name}:{uploaded.size}"


def _should_upload(uploaded: Any) -> bool:
    return uploaded is not None and _upload_key(uploaded) != st.session_state.get("uploaded_id")


def _handle_upload(uploaded: Any) -> None:
    st.session_state["uploaded_id"] = _upload_key(uploaded)
    st.session_state["prediction_response"] = None
    st.session_state["training_error"] = None
    try:
        response = _request(
            "/datasets",
            method="POST",
            params=_upload_params(uploaded.name),
            data=uploaded.getvalue(),
        )
    except ApiError as exc:
        # Forget the file so it is sent again on the next rerun.
        st.session_state["uploaded_id"] = None
        st.session_state["dataset_response"] = None
        st.session_state["upload_error"] = str(exc)
        return
    st.session_state["dataset_response"] = response
    st.session_state["upload_error"] = None


def _handle_train(poll_interval: float = TRAINING_POLL_SECONDS) -> None:
    """POST ``/train`` on a worker thread and poll ``/training`` for the progress bar."""

    st.session_state["training_error"] = None
    connection = _connection()
    progress_bar = st.progress(0, text="Training sequence model…")
    with ThreadPoolExecutor(max_workers=1) as executor:
        job = executor.submit(_request, "/train", method="POST", connection=connection)
        while not job.done():
            try:
                update = _training_progress(_request("/training", connection=connection))
            except ApiError:
                update = None
            if update is not None:
                progress_bar.progress(update[0], text=update[1])
            wait([job], timeout=poll_interval)
    progress_bar.empty()
    try:
        response = job.result()
    except ApiError as exc:
        st.session_state["prediction_response"] = None
        st.session_state["training_error"] = str(exc)
        return
    st.session_state["prediction_response"] = response


def _render_dataset(dataset: Mapping[str, Any]) -> None:
    st.subheader("Historical prices")
    cols = st.columns(3)
    cols[0].metric("Data points", dataset.get("rows", 0))
    cols[1].metric("From", dataset.get("start", "—"))
    cols[2].metric("To", dataset.get("end", "—"))
    chart = _history_chart(dataset.get("history") or [])
    if chart is not None:
        st.altair_chart(chart, use_container_width=True)
    warnings = dataset.get("warnings") or []
    if warnings:
        with st.expander(f"{len(warnings)} line(s) skipped"):
            st.code("\n".join(warnings))


def _render_prediction(envelope: Mapping[str, Any]) -> None:
    prediction = envelope.get("prediction") or {}
    st.subheader(f"Prediction for {prediction.get('prediction_date', '—')}")
    if prediction.get("stale"):
        st.warning("The dataset changed while training; this prediction refers to the previous upload.")
    cols = st.columns(2)
    cols[0].markdown(f"**Trend:** {_trend_badge(prediction.get('trend'))}")
    cols[1].markdown(f"**Predicted close:** {_format_price((prediction.get('predicted') or {}).get('close'))}")
    st.table(_ohlc_table(prediction))
    chart = _prediction_chart(prediction.get("chart") or [])
    if chart is not None:
        st.altair_chart(chart, use_container_width=True)
    caption = _progress_caption(envelope.get("progress") or [])
    if caption:
        st.caption(caption)


def main() -> None:
    st.set_page_config(page_title="OHLC Predictor", layout="wide")
    for key, value in SESSION_DEFAULTS.items():
        st.session_state.setdefault(key, value)

    with st.sidebar:
        st.header("Connection")
        st.text_input("API base URL", key="api_base")
        st.text_input("API key", key="api_key", type="password")

    st.title("OHLC next-day predictor")
    uploaded = st.file_uploader("Upload price history (CSV or JSON)", type=ACCEPTED_SUFFIXES)
    if _should_upload(uploaded):
        _handle_upload(uploaded)

    if st.session_state.get("upload_error"):
        st.error(st.session_state["upload_error"])

    dataset_response = st.session_state.get("dataset_response") or {}
    dataset = dataset_response.get("dataset")
    if dataset:
        _render_dataset(dataset)

    if st.button("Train & Predict", disabled=not dataset, type="primary"):
        _handle_train()

    if st.session_state.get("training_error"):
        st.error(st.session_state["training_error"])

    prediction_response = st.session_state.get("prediction_response")
    if prediction_response:
        _render_prediction(prediction_response)


if __name__ == "__main__":
    main()
