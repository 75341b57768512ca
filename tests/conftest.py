"""Pytest configuration and fixtures."""

from datetime import datetime

import pytest

from wallet_engine.config import EngineConfig
from wallet_engine.models import Card, Transaction
from wallet_engine.storage import LocalStorage

RATES = {"840->980": 40.0, "978->980": 44.0}


@pytest.fixture
def config(tmp_path):
    """Engine configuration pointing at nothing real."""
    return EngineConfig(
        project_root=tmp_path,
        api_base_url="http://wallet.test",
        api_token="secret-token",
        rates_endpoint="http://rates.test/latest",
        storage_file=tmp_path / "wallet.db",
        reconcile_interval=0,
    )


@pytest.fixture
def storage():
    """In-memory local storage."""
    store = LocalStorage()
    yield store
    store.close()


@pytest.fixture
def rates():
    return dict(RATES)


@pytest.fixture
def cards():
    """A savings card, a regular UAH card, a USD card and a cash wallet."""
    return [
        Card(id="sav", bank="Mono", name="Savings jar", currency="UAH", initial_balance=1000.0),
        Card(id="uah", bank="Mono", name="Black", currency="UAH"),
        Card(id="usd", bank="Privat", name="Dollar", currency="USD", initial_balance=10.0),
        Card(id="cash", bank="", name="Готівка", currency="UAH", initial_balance=200.0),
    ]


@pytest.fixture
def make_txn():
    """Factory for transactions dated 2024-03-01 unless told otherwise."""

    def factory(id, amount, card_id="uah", day=1, **fields):
        return Transaction(
            id=id,
            amount=amount,
            created_at=datetime(2024, 3, day, 12, 0),
            card_id=card_id,
            **fields,
        )

    return factory
