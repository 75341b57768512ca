"""Aggregates for charts and balance cards.

All sums are accumulated unrounded and rounded to two decimals only when a
row or total is produced for display.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Iterable, Mapping, Optional, Sequence

import pandas as pd

from .classifier import EARNING, SPENDING, TransactionClassifier
from .currency import CurrencyConverter
from .models import BASE_CURRENCY, Card, Transaction, index_cards

RESERVED_KEYS = frozenset({"name", "_iso"})

BUCKETS = ("cash", "cards", "savings")

UNCATEGORIZED = "Без категорії"

DEFAULT_ANCHORS = ("UAH", "USD", "EUR")


@dataclass(slots=True)
class BucketTotals:
    cash: dict[str, float] = field(default_factory=dict)
    cards: dict[str, float] = field(default_factory=dict)
    savings: dict[str, float] = field(default_factory=dict)
    all: dict[str, float] = field(default_factory=dict)
    approximate: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "cash": dict(self.cash),
            "cards": dict(self.cards),
            "savings": dict(self.savings),
            "all": dict(self.all),
            "approximate": self.approximate,
        }


@dataclass(slots=True)
class CategoryTotal:
    name: str
    total_uah: float = 0.0
    total_eur: float = 0.0
    count: int = 0
    transaction_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "total_uah": round(self.total_uah, 2),
            "total_eur": round(self.total_eur, 2),
            "count": self.count,
            "transaction_ids": list(self.transaction_ids),
        }


@dataclass(slots=True)
class CategoryBreakdown:
    expenses: list[CategoryTotal]
    incomes: list[CategoryTotal]
    approximate: bool = False

    def totals(self) -> dict[str, dict[str, float]]:
        return {
            "expense": {
                "uah": round(sum(item.total_uah for item in self.expenses), 2),
                "eur": round(sum(item.total_eur for item in self.expenses), 2),
            },
            "income": {
                "uah": round(sum(item.total_uah for item in self.incomes), 2),
                "eur": round(sum(item.total_eur for item in self.incomes), 2),
            },
        }


@dataclass(frozen=True, slots=True)
class PeriodTotal:
    amount: float
    currency: str
    approximate: bool = False


class AggregationEngine:
    """Bucket classified transactions by day, category, currency and card group."""

    def __init__(
        self,
        cards: Iterable[Card] | Mapping[str, Card] = (),
        converter: Optional[CurrencyConverter] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self._cards = index_cards(cards)
        self._converter = converter or CurrencyConverter()
        self._tz = tz
        self.classifier = TransactionClassifier(self._cards)

    # ------------------------------------------------------------------
    # Day series
    # ------------------------------------------------------------------
    def daily_series(
        self,
        transactions: Sequence[Transaction],
        start: date,
        end: date,
        mode: str,
        currency: Optional[str] = None,
    ) -> list[dict[str, object]]:
        """Return one ``{"name", "_iso", "value"}`` row per day of ``[start, end]``.

        Days without included transactions are present with a zero value so the
        chart axis stays stable.
        """

        days = _day_range(start, end)
        frame = self._included_frame(transactions, mode, currency, days)
        if frame.empty:
            totals = pd.Series(0.0, index=days)
        else:
            totals = frame.groupby("day")["amount"].sum().reindex(days, fill_value=0.0)

        return [
            {"name": _day_label(day), "_iso": day.date().isoformat(), "value": round(float(value), 2)}
            for day, value in totals.items()
        ]

    def daily_series_by_currency(
        self,
        transactions: Sequence[Transaction],
        start: date,
        end: date,
        mode: str,
    ) -> list[dict[str, object]]:
        """Return per-day rows with one numeric column per observed currency."""

        days = _day_range(start, end)
        frame = self._included_frame(transactions, mode, None, days)
        if frame.empty:
            return [{"name": _day_label(day), "_iso": day.date().isoformat()} for day in days]

        pivot = frame.pivot_table(
            index="day",
            columns="currency",
            values="amount",
            aggfunc="sum",
            fill_value=0.0,
        ).reindex(days, fill_value=0.0)

        rows: list[dict[str, object]] = []
        for day, values in pivot.iterrows():
            row: dict[str, object] = {"name": _day_label(day), "_iso": day.date().isoformat()}
            for code, value in values.items():
                row[str(code)] = round(float(value), 2)
            rows.append(row)
        return rows

    def _included_frame(
        self,
        transactions: Sequence[Transaction],
        mode: str,
        currency: Optional[str],
        days: pd.DatetimeIndex,
    ) -> pd.DataFrame:
        included = self.classifier.included_ids(transactions, mode, currency)
        records = [
            {
                "day": pd.Timestamp(self._local_day(txn.created_at)),
                "currency": self.classifier.currency_of(txn),
                "amount": abs(txn.amount),
            }
            for txn in transactions
            if txn.id in included
        ]
        frame = pd.DataFrame.from_records(records, columns=["day", "currency", "amount"])
        return frame[frame["day"].isin(days)]

    def _local_day(self, moment: datetime) -> date:
        if self._tz is not None and moment.tzinfo is not None:
            moment = moment.astimezone(self._tz)
        return moment.date()

    # ------------------------------------------------------------------
    # Period totals
    # ------------------------------------------------------------------
    def mode_total(
        self,
        transactions: Sequence[Transaction],
        mode: str,
        currency: Optional[str] = None,
    ) -> PeriodTotal:
        """Sum the included amounts of a period.

        Without a currency filter every amount is normalised to UAH first.
        """

        wanted = None if currency is None or currency.upper() == "ALL" else currency.upper()
        included = self.classifier.included_ids(transactions, mode, wanted)
        total = 0.0
        approximate = False
        for txn in transactions:
            if txn.id not in included:
                continue
            amount = abs(txn.amount)
            if wanted is None:
                conversion = self._converter.convert_checked(amount, self.classifier.currency_of(txn), BASE_CURRENCY)
                amount = conversion.amount
                approximate = approximate or not conversion.exact
            total += amount
        return PeriodTotal(amount=round(total, 2), currency=wanted or BASE_CURRENCY, approximate=approximate)

    # ------------------------------------------------------------------
    # Balance buckets
    # ------------------------------------------------------------------
    def bucket_totals(
        self,
        transactions: Iterable[Transaction],
        anchors: Sequence[str] = DEFAULT_ANCHORS,
    ) -> BucketTotals:
        """Group card balances into cash, cards and savings, plus an "all" view."""

        sums: dict[str, dict[str, float]] = {bucket: defaultdict(float) for bucket in BUCKETS}
        for card in self._cards.values():
            sums[bucket_of(card)][card.currency] += card.initial_balance

        for txn in transactions:
            if txn.archives:
                continue
            card = self._cards.get(txn.card_id) if txn.card_id is not None else None
            if txn.card_id is None:
                sums["cash"][txn.currency or BASE_CURRENCY] += txn.amount
            elif card is None:
                sums["cards"][self.classifier.currency_of(txn)] += txn.amount
            else:
                sums[bucket_of(card)][card.currency] += txn.amount

        approximate = False
        total_uah = 0.0
        for bucket in BUCKETS:
            for code, value in sums[bucket].items():
                conversion = self._converter.convert_checked(value, code, BASE_CURRENCY)
                total_uah += conversion.amount
                approximate = approximate or not conversion.exact

        everything: dict[str, float] = {}
        for anchor in anchors:
            conversion = self._converter.convert_checked(total_uah, BASE_CURRENCY, anchor)
            approximate = approximate or not conversion.exact
            everything[anchor.upper()] = conversion.amount

        return BucketTotals(
            cash=_presentable(sums["cash"]),
            cards=_presentable(sums["cards"]),
            savings=_presentable(sums["savings"]),
            all=_presentable(everything),
            approximate=approximate,
        )

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    def category_breakdown(self, transactions: Iterable[Transaction]) -> CategoryBreakdown:
        """Group eligible transactions by category, in UAH and EUR."""

        expenses: dict[str, CategoryTotal] = {}
        incomes: dict[str, CategoryTotal] = {}
        approximate = False

        for txn in transactions:
            if txn.amount == 0 or not self.classifier.is_category_eligible(txn):
                continue
            name = txn.category or UNCATEGORIZED
            code = self.classifier.currency_of(txn)
            in_uah = self._converter.convert_checked(abs(txn.amount), code, "UAH")
            in_eur = self._converter.convert_checked(abs(txn.amount), code, "EUR")
            approximate = approximate or not (in_uah.exact and in_eur.exact)

            target = expenses if txn.amount < 0 else incomes
            entry = target.setdefault(name, CategoryTotal(name=name))
            entry.total_uah += in_uah.amount
            entry.total_eur += in_eur.amount
            entry.count += 1
            entry.transaction_ids.append(txn.id)

        return CategoryBreakdown(
            expenses=sorted(expenses.values(), key=lambda item: item.total_uah, reverse=True),
            incomes=sorted(incomes.values(), key=lambda item: item.total_uah, reverse=True),
            approximate=approximate,
        )


def bucket_of(card: Card) -> str:
    if card.is_savings:
        return "savings"
    if card.is_cash:
        return "cash"
    return "cards"


def period_total(rows: Iterable[Mapping[str, object]]) -> dict[str, float]:
    """Sum every numeric column of chart rows, skipping the reserved keys."""

    totals: dict[str, float] = defaultdict(float)
    for row in rows:
        for key, value in row.items():
            if key in RESERVED_KEYS or isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            totals[key] += value
    return {key: round(value, 2) for key, value in totals.items()}


def percent_change(current: float, previous: float) -> int:
    """Whole-percent change from ``previous`` to ``current``; 0 without a baseline."""

    if previous == 0:
        return 0
    return int(math.floor((current - previous) / abs(previous) * 100 + 0.5))


def _presentable(values: Mapping[str, float]) -> dict[str, float]:
    rounded = {code: round(value, 2) for code, value in values.items()}
    return {code: value for code, value in rounded.items() if value != 0}


def _day_range(start: date, end: date) -> pd.DatetimeIndex:
    if isinstance(start, datetime):
        start = start.date()
    if isinstance(end, datetime):
        end = end.date()
    if start > end:
        raise ValueError("start must be on or before end.")
    return pd.date_range(pd.Timestamp(start), pd.Timestamp(end), freq="D")


def _day_label(day: pd.Timestamp) -> str:
    return day.strftime("%d %b")


__all__ = [
    "AggregationEngine",
    "BucketTotals",
    "CategoryBreakdown",
    "CategoryTotal",
    "EARNING",
    "PeriodTotal",
    "SPENDING",
    "bucket_of",
    "percent_change",
    "period_total",
]
