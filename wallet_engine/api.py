"""FastAPI application exposing the wallet engine's aggregates read-only."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Annotated, Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .client import ApiError, AuthenticationError
from .config import load_config
from .engine import FinanceEngine

logger = logging.getLogger(__name__)

MODE_PATTERN = "^(earning|spending)$"
CURRENCY_PATTERN = "^[A-Za-z]{3,4}$"


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create the engine once and reuse it across requests."""

    config = load_config()
    engine = FinanceEngine.from_config(config)
    await engine.initialize()

    app.state.config = config
    app.state.engine = engine

    yield

    await engine.close()


app = FastAPI(lifespan=lifespan, title="wallet_engine", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping ------------------------------------------------------------

@app.exception_handler(AuthenticationError)
async def authentication_error_handler(_: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(ApiError)
async def api_error_handler(_: Request, exc: ApiError) -> JSONResponse:
    logger.warning("Data API failure: %s", exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# Dependency injection ------------------------------------------------------

def get_engine() -> FinanceEngine:
    engine: FinanceEngine = app.state.engine
    return engine


# Routes --------------------------------------------------------------------


@app.get("/health")
def health_check() -> dict[str, str]:
    """Return a basic heartbeat payload for monitoring purposes."""

    return {"status": "ok"}


@app.get("/totals")
async def balance_totals(engine: Annotated[FinanceEngine, Depends(get_engine)]) -> dict[str, object]:
    totals = await engine.totals()
    return totals.as_dict()


@app.get("/chart/daily")
async def daily_chart(
    engine: Annotated[FinanceEngine, Depends(get_engine)],
    mode: Annotated[str, Query(pattern=MODE_PATTERN)] = "spending",
    start: Optional[date] = None,
    end: Optional[date] = None,
    currency: Annotated[Optional[str], Query(pattern=CURRENCY_PATTERN)] = None,
) -> dict[str, Any]:
    start, end = _period(start, end)
    return await engine.daily_chart(start, end, mode, currency.upper() if currency else None)


@app.get("/chart/change")
async def period_change(
    engine: Annotated[FinanceEngine, Depends(get_engine)],
    mode: Annotated[str, Query(pattern=MODE_PATTERN)] = "spending",
    start: Optional[date] = None,
    end: Optional[date] = None,
    currency: Annotated[Optional[str], Query(pattern=CURRENCY_PATTERN)] = None,
) -> dict[str, Any]:
    start, end = _period(start, end)
    return await engine.period_change(start, end, mode, currency.upper() if currency else None)


@app.get("/categories")
async def categories(
    engine: Annotated[FinanceEngine, Depends(get_engine)],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> dict[str, object]:
    start, end = _period(start, end)
    breakdown = await engine.categories(start, end)
    return {
        "expenses": [item.as_dict() for item in breakdown.expenses],
        "incomes": [item.as_dict() for item in breakdown.incomes],
        "totals": breakdown.totals(),
        "approximate": breakdown.approximate,
    }


@app.get("/settings")
def get_settings(engine: Annotated[FinanceEngine, Depends(get_engine)]) -> dict[str, object]:
    return {
        "state": engine.settings.state,
        "settings": engine.settings.settings,
        "pending": sorted(engine.settings.pending),
    }


@app.put("/settings/{key}")
async def put_setting(
    key: str,
    value: Annotated[Any, Body(embed=True)],
    engine: Annotated[FinanceEngine, Depends(get_engine)],
) -> dict[str, object]:
    """Set a setting; dotted keys address nested values."""

    if not all(part.strip() for part in key.split(".")):
        raise HTTPException(status_code=422, detail=f"Invalid setting key: {key!r}")
    if "." in key:
        engine.settings.update_nested_setting(key, value)
        stored = engine.settings.get_nested_setting(key)
    else:
        engine.settings.update_setting(key, value)
        stored = engine.settings.get_setting(key)
    return {"key": key, "value": stored, "pending": sorted(engine.settings.pending)}


def _period(start: Optional[date], end: Optional[date]) -> tuple[date, date]:
    """Default to the current month up to today."""

    end = end or date.today()
    start = start or end.replace(day=1)
    if start > end:
        raise HTTPException(status_code=422, detail="start must be on or before end.")
    return start, end
