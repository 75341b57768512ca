"""Tests for models.py - payload normalisation and card hints."""

from datetime import datetime, timezone

import pytest

from wallet_engine.models import Card, Transaction, index_cards, transaction_currency


def test_transaction_from_payload():
    txn = Transaction.from_dict(
        {
            "id": 17,
            "amount": "-42.5",
            "created_at": "2024-03-01T10:15:00+00:00",
            "card_id": 3,
            "archives": "false",
            "is_transfer": True,
            "transfer_id": "t-1",
            "transfer_role": "from",
            "currency": "usd",
        }
    )

    assert txn.id == "17"
    assert txn.amount == -42.5
    assert txn.created_at == datetime(2024, 3, 1, 10, 15, tzinfo=timezone.utc)
    assert txn.card_id == "3"
    assert txn.archives is False
    assert (txn.is_transfer, txn.transfer_id, txn.transfer_role) == (True, "t-1", "from")
    assert txn.currency == "USD"


def test_missing_timestamp_is_rejected():
    with pytest.raises(ValueError):
        Transaction.from_dict({"id": "x", "amount": 1})


def test_refund_tag():
    refund = Transaction.from_dict(
        {"id": "r", "amount": 10, "created_at": "2024-03-01", "note": "shop [refund_for:abc-1] thanks"}
    )
    debit = Transaction.from_dict({"id": "d", "amount": -10, "created_at": "2024-03-01", "note": "[refund_for:abc-1]"})

    assert refund.refund_for == "abc-1"
    assert refund.is_refund
    assert not debit.is_refund


def test_card_hints():
    assert Card(id="1", bank="Monobank", name="Банка збереження").is_savings
    assert Card(id="2", name="Cash wallet").is_cash
    assert Card(id="3", bank="Binance", name="Spot").is_binance
    plain = Card.from_dict({"id": 4, "bank": "Privat", "name": "Gold", "currency": "eur", "initial_balance": "12.5"})
    assert not (plain.is_savings or plain.is_cash or plain.is_binance)
    assert (plain.id, plain.currency, plain.initial_balance) == ("4", "EUR", 12.5)


def test_currency_resolution():
    cards = index_cards([Card(id="usd", currency="USD")])
    at = datetime(2024, 3, 1)

    assert transaction_currency(Transaction(id="a", amount=1, created_at=at, card_id="usd"), cards) == "USD"
    assert transaction_currency(Transaction(id="b", amount=1, created_at=at, card_id="usd", currency="EUR"), cards) == "EUR"
    assert transaction_currency(Transaction(id="c", amount=1, created_at=at), cards) == "UAH"
    assert transaction_currency(Transaction(id="d", amount=1, created_at=at, card_id="gone"), cards) == "UAH"
