"""Cross-rate currency conversion through the UAH pivot.

Rate tables map ``"<numeric ISO code>->980"`` to the number of hryvnias per
one unit of the source currency, e.g. ``{"840->980": 41.2}`` for USD. Every
conversion goes ``from -> UAH -> to``. Tables arrive asynchronously and may be
empty or partial, so a missing rate never raises: the converter returns the
best value it can compute and reports through :class:`Conversion` whether the
result is exact.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

BASE_CODE = "980"

NUMERIC_CODES: dict[str, str] = {
    "UAH": "980",
    "USD": "840",
    # USDT shares the USD rate.
    "USDT": "840",
    "EUR": "978",
    "GBP": "826",
    "PLN": "985",
    "CHF": "756",
    "CZK": "203",
    "HUF": "348",
}


@dataclass(frozen=True, slots=True)
class Conversion:
    """Result of a conversion together with its completeness."""

    amount: float
    exact: bool


def normalize_currency(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    normalized = str(code).strip().upper()
    return normalized or None


def rate_key(currency: str) -> Optional[str]:
    """Return the rate-table key for ``currency`` or ``None`` if unknown."""

    numeric = NUMERIC_CODES.get(currency)
    if numeric is None:
        return None
    return f"{numeric}->{BASE_CODE}"


class CurrencyConverter:
    """Convert amounts between currencies using a UAH-pivot rate table."""

    def __init__(self, rates: Optional[Mapping[str, float]] = None) -> None:
        self._rates = dict(rates or {})

    @property
    def rates(self) -> dict[str, float]:
        return dict(self._rates)

    def with_rates(self, rates: Mapping[str, float]) -> "CurrencyConverter":
        return CurrencyConverter(rates)

    def convert(self, amount: float, source: Optional[str], target: Optional[str]) -> float:
        """Convert ``amount`` from ``source`` to ``target``.

        Missing rates degrade silently: without the first leg the original
        amount is returned, without the second leg the UAH intermediate.
        """

        return self.convert_checked(amount, source, target).amount

    def convert_checked(self, amount: float, source: Optional[str], target: Optional[str]) -> Conversion:
        source = normalize_currency(source)
        target = normalize_currency(target)
        if source is None or target is None or source == target:
            return Conversion(amount, True)

        source_code = NUMERIC_CODES.get(source)
        target_code = NUMERIC_CODES.get(target)
        if source_code is not None and source_code == target_code:
            return Conversion(amount, True)

        intermediate = amount
        if source_code != BASE_CODE:
            rate = self._rate(source)
            if rate is None:
                return Conversion(amount, False)
            intermediate = amount * rate

        if target_code == BASE_CODE:
            return Conversion(intermediate, True)

        rate = self._rate(target)
        if rate is None:
            return Conversion(intermediate, False)
        return Conversion(intermediate / rate, True)

    def can_convert(self, source: Optional[str], target: Optional[str]) -> bool:
        return self.convert_checked(1.0, source, target).exact

    def _rate(self, currency: str) -> Optional[float]:
        key = rate_key(currency)
        if key is None:
            return None
        rate = self._rates.get(key)
        if not rate:
            return None
        return float(rate)


__all__ = ["Conversion", "CurrencyConverter", "NUMERIC_CODES", "normalize_currency", "rate_key"]
