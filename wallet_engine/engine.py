"""High-level orchestration of the wallet engine components."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional

from .aggregation import AggregationEngine, BucketTotals, CategoryBreakdown, percent_change, period_total
from .cache import CARDS, PREFERENCES, RATES, SUMS, TRANSACTIONS, CacheRegistry, RefreshGate, RefreshSuperseded
from .classifier import ALL_CURRENCIES
from .client import ApiError, AsyncWalletApi, WalletApiClient
from .config import EngineConfig
from .currency import CurrencyConverter, normalize_currency
from .events import EventBus, LiveBalances, delta_from_change
from .models import BalanceDeltaEvent, Card, Transaction
from .rates import RateService
from .settings_store import SettingsStore
from .storage import LocalStorage

logger = logging.getLogger(__name__)

VIEWS = ("chart", "totals", "categories")


class FinanceEngine:
    """Coordinates caches, settings sync, live balances and aggregation.

    One engine is created per process and owns every stateful component; the
    lifecycle is ``initialize()`` once, ``reset()`` on sign-out and
    ``close()`` on shutdown.
    """

    def __init__(
        self,
        config: EngineConfig,
        api: AsyncWalletApi,
        rate_service: RateService,
        storage: LocalStorage,
        *,
        caches: Optional[CacheRegistry] = None,
        bus: Optional[EventBus[BalanceDeltaEvent]] = None,
        settings: Optional[SettingsStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._api = api
        self._rate_service = rate_service
        self._storage = storage
        self.caches = caches or CacheRegistry.from_config(config, clock)
        self.bus: EventBus[BalanceDeltaEvent] = bus or EventBus("balances")
        self.settings = settings or SettingsStore.from_config(config, storage, api)
        self.settings.on_synced = self._preferences_synced
        self.balances = LiveBalances(self.bus, loader=self.card_balances)
        self.views: dict[str, Any] = {}
        self._gates = {name: RefreshGate(name) for name in VIEWS}
        self._converter = CurrencyConverter()
        self._reconcile_task: Optional[asyncio.Task] = None
        self.initialized = False

    @classmethod
    def from_config(cls, config: EngineConfig) -> "FinanceEngine":
        storage = LocalStorage(config.storage_file)
        api = AsyncWalletApi(WalletApiClient(config))
        return cls(config, api, RateService(config), storage)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        if self.initialized:
            return
        await self.settings.initialize()
        try:
            await self.balances.refresh()
        except RefreshSuperseded:
            logger.debug("Initial balance load superseded")
        except ApiError as exc:
            logger.warning("Balances unavailable at start-up: %s", exc)

        if self._config.reconcile_interval > 0:
            self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_periodically())
        self.initialized = True

    async def close(self) -> None:
        self._stop_reconciling()
        for gate in self._gates.values():
            gate.cancel_pending()
        self.balances.close()
        await self.settings.close()
        self.bus.close()
        self._storage.close()
        self.initialized = False

    def reset(self) -> None:
        """Drop every user-specific state, including the local settings copy."""

        self._stop_reconciling()
        for gate in self._gates.values():
            gate.cancel_pending()
        self.settings.reset()
        self.caches.invalidate_all()
        self.balances.clear()
        self.views = {}
        self.initialized = False

    def _stop_reconciling(self) -> None:
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
        self._reconcile_task = None

    # ------------------------------------------------------------------
    # Cached resources
    # ------------------------------------------------------------------
    async def cards(self) -> list[Card]:
        payload = await self.caches[CARDS].get(self._api.list_cards)
        return [Card.from_dict(item) for item in payload]

    async def card_sums(self) -> dict[str, float]:
        return await self.caches[SUMS].get(self._api.sum_by_card)

    async def transactions(self) -> list[Transaction]:
        payload = await self.caches[TRANSACTIONS].get(self._api.list_all_transactions)
        return [Transaction.from_dict(item) for item in payload]

    async def preferences(self) -> dict[str, Any]:
        return await self.caches[PREFERENCES].get(self._api.get_preferences)

    async def rates(self) -> dict[str, float]:
        table = await self.caches[RATES].get(self._rate_service.fetch_rate_table_async)
        if not table:
            # Keep retrying while rates are warming up.
            self.caches.invalidate(RATES)
        return table

    async def converter(self) -> CurrencyConverter:
        table = await self.rates()
        if table != self._converter.rates:
            self._converter = self._converter.with_rates(table)
        return self._converter

    def _preferences_synced(self) -> None:
        self.caches.invalidate(PREFERENCES)

    async def card_balances(self) -> dict[Optional[str], float]:
        """Return ``{card_id: balance}`` with cash under ``None``."""

        cards, sums, transactions = await asyncio.gather(self.cards(), self.card_sums(), self.transactions())
        balances: dict[Optional[str], float] = {
            card.id: card.initial_balance + sums.get(card.id, 0.0) for card in cards
        }
        balances[None] = sum(txn.amount for txn in transactions if txn.card_id is None and not txn.archives)
        return balances

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def create_transaction(self, payload: Mapping[str, Any]) -> Transaction:
        row = await self._api.create_transaction(payload)
        self.apply_change("INSERT", new=row)
        return Transaction.from_dict(row)

    async def update_transaction(self, transaction_id: str, patch: Mapping[str, Any]) -> Transaction:
        old = self._cached_row(transaction_id)
        row = await self._api.update_transaction(transaction_id, patch)
        self.apply_change("UPDATE", new=row, old=old)
        return Transaction.from_dict(row)

    async def delete_transaction(self, transaction_id: str) -> None:
        old = self._cached_row(transaction_id)
        await self._api.delete_transaction(transaction_id)
        self.apply_change("DELETE", new=None, old=old or {"id": transaction_id})

    def apply_change(
        self,
        event_type: str,
        new: Optional[Mapping[str, Any]] = None,
        old: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Invalidate affected caches and broadcast the balance deltas.

        Also the entry point for realtime row changes. Returns the number of
        events emitted. When the previous row is unknown no delta can be
        derived and a full balance refresh is scheduled instead.
        """

        self.caches.invalidate(SUMS, TRANSACTIONS)
        event_type = event_type.upper()

        if event_type in ("UPDATE", "DELETE") and not _has_amount(old):
            self.balances.schedule_refresh()
            return 0

        events: list[BalanceDeltaEvent] = []
        if event_type == "UPDATE" and new and old and _card_key(new) != _card_key(old):
            # Moved between cards: take it off the old card and add it to the new one.
            moved_out = delta_from_change("DELETE", old=old)
            moved_in = delta_from_change("INSERT", new=new)
            events.extend(event for event in (moved_out, moved_in) if event is not None)
        else:
            event = delta_from_change(event_type, new, old)
            if event is not None:
                events.append(event)

        for event in events:
            self.bus.emit(event)
        return len(events)

    def _cached_row(self, transaction_id: str) -> Optional[dict[str, Any]]:
        rows = self.caches[TRANSACTIONS].peek() or []
        return next((dict(row) for row in rows if str(row.get("id")) == str(transaction_id)), None)

    # ------------------------------------------------------------------
    # Aggregated views
    # ------------------------------------------------------------------
    async def daily_chart(
        self,
        start: date,
        end: date,
        mode: str,
        currency: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return per-day chart rows and the period totals per series.

        Without a currency filter there is one column per currency.
        """

        wanted = normalize_currency(currency)
        cards, transactions = await asyncio.gather(self.cards(), self.transactions())
        aggregation = AggregationEngine(cards)
        if wanted is None or wanted == ALL_CURRENCIES:
            rows = aggregation.daily_series_by_currency(transactions, start, end, mode)
        else:
            rows = aggregation.daily_series(transactions, start, end, mode, wanted)
        return {
            "mode": mode,
            "currency": wanted or ALL_CURRENCIES,
            "rows": rows,
            "totals": period_total(rows),
        }

    async def period_change(
        self,
        start: date,
        end: date,
        mode: str,
        currency: Optional[str] = None,
    ) -> dict[str, Any]:
        """Compare a period's total with the equally long period before it."""

        if start > end:
            raise ValueError("start must be on or before end.")
        length = (end - start).days + 1
        previous_start = start - timedelta(days=length)
        previous_end = start - timedelta(days=1)

        cards, transactions, converter = await asyncio.gather(self.cards(), self.transactions(), self.converter())
        aggregation = AggregationEngine(cards, converter)
        current = aggregation.mode_total(_within(transactions, start, end), mode, currency)
        previous = aggregation.mode_total(_within(transactions, previous_start, previous_end), mode, currency)
        return {
            "mode": mode,
            "currency": current.currency,
            "current": current.amount,
            "previous": previous.amount,
            "change_percent": percent_change(current.amount, previous.amount),
            "approximate": current.approximate or previous.approximate,
        }

    async def totals(self) -> BucketTotals:
        cards, transactions, converter = await asyncio.gather(self.cards(), self.transactions(), self.converter())
        aggregation = AggregationEngine(cards, converter)
        return aggregation.bucket_totals(transactions, self._config.anchor_currencies)

    async def categories(self, start: Optional[date] = None, end: Optional[date] = None) -> CategoryBreakdown:
        cards, transactions, converter = await asyncio.gather(self.cards(), self.transactions(), self.converter())
        aggregation = AggregationEngine(cards, converter)
        return aggregation.category_breakdown(_within(transactions, start, end))

    async def refund_adjusted_amounts(self) -> dict[str, float]:
        """Return the net display amount of every expense that has refunds."""

        cards, transactions, converter = await asyncio.gather(self.cards(), self.transactions(), self.converter())
        return AggregationEngine(cards).classifier.net_display_amounts(transactions, converter)

    # ------------------------------------------------------------------
    # Latest-wins refreshes for long-lived consumers
    # ------------------------------------------------------------------
    async def refresh_chart(self, start: date, end: date, mode: str, currency: Optional[str] = None) -> Optional[dict[str, Any]]:
        return await self._refresh_view("chart", lambda: self.daily_chart(start, end, mode, currency))

    async def refresh_totals(self) -> Optional[BucketTotals]:
        return await self._refresh_view("totals", self.totals)

    async def refresh_categories(self, start: Optional[date] = None, end: Optional[date] = None) -> Optional[CategoryBreakdown]:
        return await self._refresh_view("categories", lambda: self.categories(start, end))

    async def _refresh_view(self, name: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        """Recompute a view, returning ``None`` when a newer refresh replaced it."""

        try:
            result = await self._gates[name].submit(compute)
        except RefreshSuperseded:
            logger.debug("%s refresh superseded", name)
            return None
        self.views[name] = result
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def reconcile(self) -> None:
        """Refetch everything optimistic updates may have drifted from."""

        self.caches.invalidate(CARDS, SUMS, TRANSACTIONS)
        try:
            await self.balances.refresh()
        except RefreshSuperseded:
            logger.debug("Reconciliation superseded by a newer balance refresh")

    async def _reconcile_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._config.reconcile_interval)
            try:
                await self.reconcile()
            except ApiError as exc:
                logger.warning("Periodic reconciliation failed: %s", exc)


def _within(transactions: list[Transaction], start: Optional[date], end: Optional[date]) -> list[Transaction]:
    return [
        txn
        for txn in transactions
        if (start is None or txn.created_at.date() >= start) and (end is None or txn.created_at.date() <= end)
    ]


def _has_amount(row: Optional[Mapping[str, Any]]) -> bool:
    return bool(row) and row.get("amount") is not None


def _card_key(row: Mapping[str, Any]) -> Optional[str]:
    value = row.get("card_id")
    return None if value in (None, "") else str(value)


__all__ = ["FinanceEngine"]
