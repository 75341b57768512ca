"""Exchange-rate helpers for the wallet engine."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

import requests

from .config import EngineConfig
from .currency import NUMERIC_CODES, rate_key

logger = logging.getLogger(__name__)


class RateService:
    """Fetch the third-party rate payload and derive the UAH-pivot table."""

    def __init__(self, config: EngineConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or requests.Session()

    def fetch_rate_table(self) -> dict[str, float]:
        """Return ``{"<code>->980": rate}`` for every supported currency.

        The function degrades to an empty table when no endpoint is configured
        or when the external service fails or returns an unexpected payload.
        Callers treat an empty table as "rates still warming up".
        """

        if not self._config.rates_endpoint:
            return {}

        try:
            response = self._session.get(self._config.rates_endpoint, timeout=self._config.http_timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Exchange rates unavailable: %s", exc)
            return {}

        table = derive_rate_table(payload)
        if not table:
            logger.warning("Exchange rate payload did not contain a usable UAH rate")
        return table

    async def fetch_rate_table_async(self) -> dict[str, float]:
        return await asyncio.to_thread(self.fetch_rate_table)


def derive_rate_table(payload: Any) -> dict[str, float]:
    """Turn ``{"rates": {ISO: rate-vs-USD}}`` into UAH-pivot rates.

    With USD quotes, one unit of ``code`` is worth ``rates["UAH"] / rates[code]``
    hryvnias. USDT is not quoted by rate sources; it resolves to the USD key.
    """

    if not isinstance(payload, Mapping):
        return {}
    rates = payload.get("rates")
    if not isinstance(rates, Mapping):
        return {}

    uah = _positive(rates.get("UAH"))
    if uah is None:
        return {}

    table: dict[str, float] = {}
    for code in NUMERIC_CODES:
        if code == "UAH":
            continue
        quoted = _positive(rates.get(code))
        key = rate_key(code)
        if quoted is None or key is None or key in table:
            continue
        table[key] = uah / quoted
    return table


def _positive(value: object) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return number


__all__ = ["RateService", "derive_rate_table"]
