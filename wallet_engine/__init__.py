"""wallet_engine package exposing the FastAPI application."""

from .api import app

__all__ = ["app"]
