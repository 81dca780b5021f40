"""User-facing API and dashboard for the OHLC predictor."""
