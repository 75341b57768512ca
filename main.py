"""Entrypoint for running the wallet_engine read API locally."""
from __future__ import annotations

import logging

import uvicorn

from wallet_engine import app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "wallet_engine.api:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
