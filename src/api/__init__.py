"""HTTP API."""

from src.api.webhook import create_app

__all__ = ["create_app"]
