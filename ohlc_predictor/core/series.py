"""Parsing and validation of uploaded OHLC price histories."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import date
from operator import attrgetter
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

import numpy as np
import pandas as pd

from ohlc_predictor.core.exceptions import (
    InsufficientDataError,
    MalformedFileError,
    MissingColumnsError,
    UnsupportedFormatError,
)

LOGGER = logging.getLogger(__name__)

REQUIRED_COLUMNS: tuple[str, ...] = ("date", "open", "high", "low", "close")
PRICE_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close")
DEFAULT_MIN_ROWS = 50
SUPPORTED_FORMATS: tuple[str, ...] = ("csv", "json")
# pandas resolves these against the clock instead of rejecting them
_RELATIVE_DATE_WORDS = frozenset({"now", "today", "yesterday", "tomorrow"})

_LINE_BREAK = re.compile(r"\r?\n")


@dataclass(frozen=True, slots=True)
class OhlcValues:
    """Open/high/low/close quadruple without a date attached."""

    open: float
    high: float
    low: float
    close: float

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "OhlcValues":
        if len(values) != 4:
            raise ValueError(f"Expected 4 OHLC values, got {len(values)}.")
        return cls(*(float(value) for value in values))

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.open, self.high, self.low, self.close)

    def as_dict(self) -> dict[str, float]:
        return dict(zip(PRICE_COLUMNS, self.as_tuple()))


@dataclass(frozen=True, slots=True)
class OhlcPoint:
    """One validated trading day."""

    date: date
    open: float
    high: float
    low: float
    close: float

    @property
    def values(self) -> OhlcValues:
        return OhlcValues(self.open, self.high, self.low, self.close)

    def as_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), **self.values.as_dict()}


@dataclass(frozen=True, slots=True)
class Series:
    """Chronologically sorted OHLC history together with its scale factor."""

    points: tuple[OhlcPoint, ...]
    scale: float
    warnings: tuple[str, ...] = field(default_factory=tuple)
    source_format: str = "csv"

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[OhlcPoint]:
        return iter(self.points)

    def __getitem__(self, index: int) -> OhlcPoint:
        return self.points[index]

    @property
    def last(self) -> OhlcPoint:
        return self.points[-1]

    def as_array(self) -> np.ndarray:
        """Return the prices as an ``(n, 4)`` float array in OHLC order."""

        if not self.points:
            return np.empty((0, 4), dtype=np.float64)
        return np.asarray([point.values.as_tuple() for point in self.points], dtype=np.float64)


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in _RELATIVE_DATE_WORDS:
        return None
    try:
        timestamp = pd.Timestamp(text)
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(timestamp):
        return None
    if timestamp.tzinfo is not None:
        timestamp = timestamp.tz_convert("UTC")
    return timestamp.date()


def _parse_price(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().removeprefix("$")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def _has_valid_relationships(open_: float, high: float, low: float, close: float) -> bool:
    return not (low > high or open_ > high or close > high or low > open_ or low > close)


def compute_scale_factor(points: Iterable[OhlcPoint | OhlcValues]) -> float:
    """Return the largest price across all four fields, or ``0.0`` when empty."""

    scale = 0.0
    for point in points:
        scale = max(scale, point.open, point.high, point.low, point.close)
    return scale


def _finalise(
    points: list[OhlcPoint],
    warnings: list[str],
    *,
    scale: float,
    min_rows: int,
    source_format: str,
) -> Series:
    if len(points) < min_rows:
        raise InsufficientDataError(
            count=len(points),
            minimum=min_rows,
            warnings=warnings,
            source=source_format.upper(),
        )
    if warnings:
        LOGGER.warning("Some lines were skipped due to errors:\n%s", "\n".join(warnings))
    ordered = sorted(points, key=attrgetter("date"))
    return Series(
        points=tuple(ordered),
        scale=scale,
        warnings=tuple(warnings),
        source_format=source_format,
    )


def _csv_scale_prepass(lines: Sequence[str], indices: Sequence[int]) -> float:
    scale = 0.0
    for raw_line in lines[1:]:
        line = raw_line.strip()
        if not line:
            continue
        values = [value.strip() for value in line.split(",")]
        prices = [_parse_price(values[idx]) if idx < len(values) else None for idx in indices]
        if all(price is not None for price in prices):
            scale = max(scale, *prices)
    return scale


def parse_csv(text: str, *, min_rows: int = DEFAULT_MIN_ROWS) -> Series:
    """Parse CSV text into a validated :class:`Series`.

    Rows with the wrong column count, an unparsable date, non-positive or
    non-numeric prices, or inconsistent OHLC relationships are skipped and
    reported as warnings. The whole upload fails only when fewer than
    ``min_rows`` rows survive.
    """

    cleaned = text.removeprefix("\ufeff").strip()
    lines = _LINE_BREAK.split(cleaned)
    if len(lines) < 2:
        raise MalformedFileError("CSV file must contain headers and at least one data row")

    headers = [header.strip() for header in lines[0].lower().split(",")]
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        raise MissingColumnsError(
            f"CSV must have {', '.join(REQUIRED_COLUMNS)} columns",
            missing=missing,
        )

    date_idx = headers.index("date")
    price_indices = [headers.index(column) for column in PRICE_COLUMNS]
    scale = _csv_scale_prepass(lines, price_indices)

    points: list[OhlcPoint] = []
    warnings: list[str] = []
    for idx, raw_line in enumerate(lines[1:], start=1):
        line = raw_line.strip()
        if not line:
            continue
        line_no = idx + 1
        values = [value.strip() for value in line.split(",")]
        if len(values) != len(headers):
            warnings.append(
                f"Line {line_no}: Expected {len(headers)} columns, found {len(values)}"
            )
            continue

        parsed_date = _parse_date(values[date_idx])
        if parsed_date is None:
            warnings.append(f'Line {line_no}: Invalid date format "{values[date_idx]}"')
            continue

        prices = [_parse_price(values[price_idx]) for price_idx in price_indices]
        if any(price is None for price in prices):
            warnings.append(f"Line {line_no}: Invalid OHLC values")
            continue
        if not _has_valid_relationships(*prices):
            warnings.append(f"Line {line_no}: Invalid OHLC relationships")
            continue

        points.append(OhlcPoint(parsed_date, *prices))

    return _finalise(points, warnings, scale=scale, min_rows=min_rows, source_format="csv")


def parse_json(text: str, *, min_rows: int = DEFAULT_MIN_ROWS) -> Series:
    """Parse a JSON array of OHLC objects with the same checks as :func:`parse_csv`."""

    try:
        payload = json.loads(text.removeprefix("\ufeff"))
    except json.JSONDecodeError as exc:
        raise MalformedFileError(f"Invalid JSON payload: {exc.msg}") from exc
    if not isinstance(payload, list) or not payload:
        raise MalformedFileError("JSON payload must be a non-empty array of OHLC objects")

    points: list[OhlcPoint] = []
    warnings: list[str] = []
    for index, entry in enumerate(payload, start=1):
        if not isinstance(entry, Mapping):
            warnings.append(f"Entry {index}: Expected an object")
            continue
        record = {str(key).strip().lower(): value for key, value in entry.items()}
        missing = [column for column in REQUIRED_COLUMNS if column not in record]
        if missing:
            warnings.append(f"Entry {index}: Missing fields {', '.join(missing)}")
            continue

        parsed_date = _parse_date(record["date"])
        if parsed_date is None:
            warnings.append(f'Entry {index}: Invalid date format "{record["date"]}"')
            continue

        prices = [_parse_price(record[column]) for column in PRICE_COLUMNS]
        if any(price is None for price in prices):
            warnings.append(f"Entry {index}: Invalid OHLC values")
            continue
        if not _has_valid_relationships(*prices):
            warnings.append(f"Entry {index}: Invalid OHLC relationships")
            continue

        points.append(OhlcPoint(parsed_date, *prices))

    return _finalise(
        points,
        warnings,
        scale=compute_scale_factor(points),
        min_rows=min_rows,
        source_format="json",
    )


def normalise_format(value: str | None) -> str:
    token = (value or "").strip().lower().lstrip(".")
    if token not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError("Unsupported file format")
    return token


def detect_format(filename: str | Path) -> str:
    """Infer the upload format from a file name suffix."""

    return normalise_format(Path(filename).suffix)


def parse_series(
    raw: bytes | str,
    fmt: str,
    *,
    scale_policy: str = "max",
    fixed_scale: float | None = None,
    min_rows: int = DEFAULT_MIN_ROWS,
) -> Series:
    """Decode ``raw`` and parse it according to ``fmt`` (``csv`` or ``json``).

    With ``scale_policy="fixed"`` the dataset maximum is replaced by
    ``fixed_scale`` so normalisation and denormalisation use one constant.
    """

    source_format = normalise_format(fmt)
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFileError("Uploaded file is not valid UTF-8 text") from exc
    else:
        text = raw

    if source_format == "csv":
        series = parse_csv(text, min_rows=min_rows)
    else:
        series = parse_json(text, min_rows=min_rows)

    if scale_policy == "fixed":
        if fixed_scale is None:
            raise ValueError("fixed_scale is required when scale_policy='fixed'.")
        series = replace(series, scale=float(fixed_scale))
    elif scale_policy != "max":
        raise ValueError(f"Unknown scale policy: {scale_policy!r}")

    LOGGER.debug(
        "Parsed %s points from %s upload (scale=%.4f, skipped=%s)",
        len(series),
        source_format,
        series.scale,
        len(series.warnings),
    )
    return series


def load_series_file(path: str | Path, **kwargs: Any) -> Series:
    """Read and parse a local ``.csv`` or ``.json`` file."""

    resolved = Path(path).expanduser()
    fmt = detect_format(resolved)
    return parse_series(resolved.read_bytes(), fmt, **kwargs)


__all__ = [
    "DEFAULT_MIN_ROWS",
    "OhlcPoint",
    "OhlcValues",
    "PRICE_COLUMNS",
    "REQUIRED_COLUMNS",
    "Series",
    "compute_scale_factor",
    "detect_format",
    "load_series_file",
    "normalise_format",
    "parse_csv",
    "parse_json",
    "parse_series",
]
