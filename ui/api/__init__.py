"""HTTP API exposing upload, training and status endpoints."""

from ui.api.app import create_app, require_api_key

__all__ = ["create_app", "require_api_key"]
