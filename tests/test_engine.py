"""Tests for engine.py - orchestration of caches, deltas and views."""

import asyncio
from datetime import date

import pytest

from fakes import FakeRateService, FakeWalletApi
from wallet_engine.aggregation import BucketTotals
from wallet_engine.cache import PREFERENCES, SUMS, TRANSACTIONS
from wallet_engine.engine import FinanceEngine
from wallet_engine.settings_store import SettingsStore

CARDS = [
    {"id": "sav", "bank": "Mono", "name": "Savings jar", "currency": "UAH", "initial_balance": 1000},
    {"id": "uah", "bank": "Mono", "name": "Black", "currency": "UAH", "initial_balance": 0},
    {"id": "usd", "bank": "Privat", "name": "Dollar", "currency": "USD", "initial_balance": 10},
]

ROWS = [
    {"id": "t1", "amount": -100, "card_id": "uah", "category": "Food", "created_at": "2024-03-01T10:00:00"},
    {"id": "t2", "amount": -50, "card_id": "uah", "category": "Food", "created_at": "2024-03-01T18:30:00"},
    {"id": "t3", "amount": 200, "card_id": "uah", "category": "Salary", "created_at": "2024-03-02T09:00:00"},
    {"id": "t4", "amount": -5, "card_id": "usd", "category": "Cloud", "created_at": "2024-02-20T09:00:00"},
    {"id": "t5", "amount": -20, "card_id": None, "category": "Coffee", "created_at": "2024-03-02T08:00:00"},
]


@pytest.fixture
def api():
    return FakeWalletApi(cards=CARDS, transactions=[dict(row) for row in ROWS], sums={"uah": 50.0, "usd": -5.0})


@pytest.fixture
def engine(config, api, storage, rates):
    settings = SettingsStore(storage, api, debounce=10.0)
    return FinanceEngine(config, api, FakeRateService(rates), storage, settings=settings)


@pytest.fixture
def events(engine):
    seen = []
    engine.bus.subscribe(seen.append)
    return seen


@pytest.mark.asyncio
async def test_initialize_loads_balances(engine):
    await engine.initialize()

    assert engine.initialized
    assert engine.settings.ready
    assert engine.balances.snapshot() == {"sav": 1000.0, "uah": 50.0, "usd": 5.0, None: -20.0}


@pytest.mark.asyncio
async def test_resources_are_cached(engine, api):
    await asyncio.gather(engine.cards(), engine.cards(), engine.transactions())
    await engine.cards()

    assert api.calls == {"cards": 1, "transactions": 1}


@pytest.mark.asyncio
async def test_empty_rate_table_is_refetched(config, api, storage):
    rates = FakeRateService({})
    engine = FinanceEngine(config, api, rates, storage, settings=SettingsStore(storage, None))

    assert await engine.rates() == {}
    rates.table = {"840->980": 40.0}
    assert await engine.rates() == {"840->980": 40.0}
    assert await engine.rates() == {"840->980": 40.0}
    assert rates.calls == 2


@pytest.mark.asyncio
async def test_create_emits_delta_and_invalidates(engine, events):
    await engine.transactions()

    created = await engine.create_transaction({"amount": -30, "card_id": "uah", "created_at": "2024-03-03T12:00:00"})

    assert created.amount == -30
    assert [(event.type, event.card_id, event.delta) for event in events] == [("INSERT", "uah", -30)]
    assert engine.caches[TRANSACTIONS].peek() is None
    assert engine.caches[SUMS].peek() is None
    await engine.balances.wait_idle()


@pytest.mark.asyncio
async def test_update_uses_the_cached_row_for_the_delta(engine, events):
    await engine.transactions()

    await engine.update_transaction("t1", {"amount": -130})

    assert [(event.type, event.delta) for event in events] == [("UPDATE", -30)]


@pytest.mark.asyncio
async def test_moving_a_row_between_cards_emits_two_deltas(engine, events):
    await engine.transactions()

    await engine.update_transaction("t1", {"card_id": "usd", "amount": -3})

    assert [(event.card_id, event.delta) for event in events] == [("uah", 100), ("usd", -3)]
    await engine.balances.wait_idle()


@pytest.mark.asyncio
async def test_delete_without_known_row_refreshes_balances(engine, events, api):
    await engine.delete_transaction("t2")
    await engine.balances.wait_idle()

    assert events == []
    assert api.calls["delete"] == 1
    assert engine.balances.balance("uah") == 50.0


@pytest.mark.asyncio
async def test_realtime_archive_is_treated_as_delete(engine, events):
    emitted = engine.apply_change(
        "UPDATE",
        new={"id": "t1", "card_id": "uah", "amount": -100, "archives": True},
        old={"id": "t1", "card_id": "uah", "amount": -100, "archives": False},
    )
    assert emitted == 1
    assert (events[0].type, events[0].delta) == ("DELETE", 100)


@pytest.mark.asyncio
async def test_realtime_delete_of_archived_row_moves_nothing(engine, events):
    emitted = engine.apply_change(
        "DELETE",
        old={"id": "t9", "card_id": "uah", "amount": -100, "archives": True},
    )
    assert emitted == 0
    assert events == []


@pytest.mark.asyncio
async def test_moving_archived_row_moves_nothing(engine, events):
    emitted = engine.apply_change(
        "UPDATE",
        new={"id": "t9", "card_id": "usd", "amount": -100, "archives": True},
        old={"id": "t9", "card_id": "uah", "amount": -100, "archives": True},
    )
    assert emitted == 0
    assert events == []


@pytest.mark.asyncio
async def test_moving_and_restoring_row_only_credits_new_card(engine, events):
    engine.apply_change(
        "UPDATE",
        new={"id": "t9", "card_id": "usd", "amount": -3, "archives": False},
        old={"id": "t9", "card_id": "uah", "amount": -100, "archives": True},
    )
    assert [(event.type, event.card_id, event.delta) for event in events] == [("INSERT", "usd", -3)]
    await engine.balances.wait_idle()


@pytest.mark.asyncio
async def test_daily_chart(engine):
    chart = await engine.daily_chart(date(2024, 3, 1), date(2024, 3, 2), "spending", "UAH")

    assert [row["value"] for row in chart["rows"]] == [150, 20]
    assert chart["totals"] == {"value": 170}

    by_currency = await engine.daily_chart(date(2024, 3, 1), date(2024, 3, 2), "spending")
    assert by_currency["currency"] == "ALL"
    assert by_currency["totals"] == {"UAH": 170}


@pytest.mark.asyncio
async def test_period_change_compares_with_previous_period(engine):
    result = await engine.period_change(date(2024, 3, 1), date(2024, 3, 2), "spending")

    assert result["current"] == 170
    assert result["previous"] == 0
    assert result["change_percent"] == 0

    february = await engine.period_change(date(2024, 2, 20), date(2024, 2, 20), "spending")
    assert february["current"] == 200
    assert february["approximate"] is False


@pytest.mark.asyncio
async def test_totals_and_categories(engine):
    totals = await engine.totals()
    assert totals.savings == {"UAH": 1000}
    assert totals.cash == {"UAH": -20}
    assert totals.cards == {"UAH": 50, "USD": 5}

    breakdown = await engine.categories(date(2024, 3, 1), date(2024, 3, 31))
    assert [item.name for item in breakdown.expenses] == ["Food", "Coffee"]
    assert [item.name for item in breakdown.incomes] == ["Salary"]


@pytest.mark.asyncio
async def test_refund_adjusted_amounts(engine, api):
    api.rows.append(
        {"id": "r1", "amount": 40, "card_id": "uah", "note": "[refund_for:t1]", "created_at": "2024-03-05T10:00:00"}
    )
    assert await engine.refund_adjusted_amounts() == {"t1": -60}


@pytest.mark.asyncio
async def test_latest_refresh_wins(engine):
    first, second = await asyncio.gather(engine.refresh_totals(), engine.refresh_totals())

    assert first is None
    assert isinstance(second, BucketTotals)
    assert engine.views["totals"] is second


@pytest.mark.asyncio
async def test_reset_drops_user_state(engine):
    await engine.initialize()
    await engine.refresh_totals()
    engine.settings.update_setting("theme", "dark")

    engine.reset()

    assert engine.views == {}
    assert engine.balances.snapshot() == {}
    assert engine.settings.settings == {}
    assert engine.caches[TRANSACTIONS].peek() is None
    assert not engine.initialized


@pytest.mark.asyncio
async def test_reconcile_refetches(engine, api):
    await engine.initialize()
    api.sums["uah"] = 75.0

    await engine.reconcile()

    assert engine.balances.balance("uah") == 75.0


@pytest.mark.asyncio
async def test_settings_sync_invalidates_cached_preferences(engine, api):
    """Preferences read after a successful sync reflect the new values."""
    api.preferences = {"theme": "light"}
    await engine.settings.initialize()
    assert await engine.preferences() == {"theme": "light"}

    engine.settings.update_setting("theme", "dark")
    assert await engine.settings.flush() is True

    assert engine.caches[PREFERENCES].peek() is None
    assert await engine.preferences() == {"theme": "dark"}


@pytest.mark.asyncio
async def test_converter_follows_the_rate_table(engine, rates):
    converter = await engine.converter()

    assert converter.rates == rates
    assert await engine.converter() is converter
