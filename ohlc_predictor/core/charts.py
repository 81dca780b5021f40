"""Chart-ready payloads derived from a series and its prediction."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from ohlc_predictor.core.series import OhlcValues, Series

TREND_UP = "Up"
TREND_DOWN = "Down"
HISTORICAL_LABEL = "Historical Price"
PREDICTION_LABEL = "Prediction"
DEFAULT_LOOKBACK = 10


def trend_label(prediction: OhlcValues, last_close: float) -> str:
    return TREND_UP if prediction.close > last_close else TREND_DOWN


def next_prediction_date(series: Series) -> date:
    """Calendar day following the last observation."""

    return series.last.date + timedelta(days=1)


def history_points(series: Series) -> list[dict[str, Any]]:
    return [{"date": point.date.isoformat(), "close": point.close} for point in series]


def prediction_chart_points(
    series: Series,
    prediction: OhlcValues,
    *,
    lookback: int = DEFAULT_LOOKBACK,
) -> list[dict[str, Any]]:
    """Last ``lookback`` closes followed by a dashed segment to the predicted close.

    The prediction segment starts at the last historical close so the two
    lines join on the chart.
    """

    recent = series.points[-lookback:]
    rows: list[dict[str, Any]] = [
        {"date": point.date.isoformat(), "price": point.close, "series": HISTORICAL_LABEL}
        for point in recent
    ]
    rows.append(
        {"date": series.last.date.isoformat(), "price": series.last.close, "series": PREDICTION_LABEL}
    )
    rows.append(
        {
            "date": next_prediction_date(series).isoformat(),
            "price": prediction.close,
            "series": PREDICTION_LABEL,
        }
    )
    return rows


def summarise_prediction(series: Series, prediction: OhlcValues) -> dict[str, Any]:
    """Last known OHLC next to the predicted OHLC and the derived trend."""

    last = series.last
    return {
        "last": last.as_dict(),
        "predicted": prediction.as_dict(),
        "prediction_date": next_prediction_date(series).isoformat(),
        "trend": trend_label(prediction, last.close),
    }


__all__ = [
    "DEFAULT_LOOKBACK",
    "HISTORICAL_LABEL",
    "PREDICTION_LABEL",
    "TREND_DOWN",
    "TREND_UP",
    "history_points",
    "next_prediction_date",
    "prediction_chart_points",
    "summarise_prediction",
    "trend_label",
]
