"""OKX API connectors module."""

from src.connectors.okx_client import OKXRestClient

__all__ = ["OKXRestClient"]
