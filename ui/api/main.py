"""ASGI entry point for running the OHLC predictor UI API via uvicorn."""

from __future__ import annotations

from ohlc_predictor.core.config import build_config

from .app import create_app

# Configuration comes from OHLC_PREDICTOR_* variables (and an optional .env).
app = create_app(build_config())

__all__ = ["app"]
