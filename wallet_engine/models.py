"""Domain models used by the wallet engine.

The classes defined here are lightweight data containers that do not know
anything about transport or caching. Transactions and cards arrive from the
data API as JSON objects; :meth:`Transaction.from_dict` and
:meth:`Card.from_dict` normalise those payloads once so the classification
and aggregation code can rely on typed attributes.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from dateutil import parser as date_parser

BASE_CURRENCY = "UAH"

SAVINGS_MARKERS = ("savings", "збер")
CASH_MARKERS = ("cash", "готів")
BINANCE_MARKERS = ("binance",)

REFUND_TAG = re.compile(r"\[refund_for:([^\]]+)\]")

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")


def has_marker(label: Optional[str], markers: tuple[str, ...]) -> bool:
    """Return ``True`` when ``label`` contains one of ``markers`` (case-insensitive)."""

    text = (label or "").lower()
    return any(marker in text for marker in markers)


@dataclass(slots=True)
class Card:
    """A bank card or account owned by the user.

    The bank and name labels double as classification hints: a card whose
    label mentions savings is kept out of income/expense figures, cash-labelled
    cards are grouped under the cash bucket and Binance cards are left out of
    the category breakdown.
    """

    id: str
    bank: str = ""
    name: str = ""
    currency: str = BASE_CURRENCY
    initial_balance: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.bank} {self.name}".strip()

    @property
    def is_savings(self) -> bool:
        return has_marker(self.label, SAVINGS_MARKERS)

    @property
    def is_cash(self) -> bool:
        return has_marker(self.label, CASH_MARKERS)

    @property
    def is_binance(self) -> bool:
        return has_marker(self.label, BINANCE_MARKERS)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Card":
        return cls(
            id=str(payload["id"]),
            bank=str(payload.get("bank") or ""),
            name=str(payload.get("name") or ""),
            currency=str(payload.get("currency") or BASE_CURRENCY).upper(),
            initial_balance=_to_float(payload.get("initial_balance")),
        )


@dataclass(slots=True)
class Transaction:
    """A single ledger entry.

    ``amount`` is signed: expenses are negative and income is positive. The
    currency is usually implied by the owning card; ``currency`` is only set
    when the data API returns it explicitly. Transfers are stored as two legs
    sharing ``transfer_id`` with the roles ``from`` and ``to``.
    """

    id: str
    amount: float
    created_at: datetime
    card_id: Optional[str] = None
    category: Optional[str] = None
    archives: bool = False
    is_transfer: bool = False
    transfer_id: Optional[str] = None
    transfer_role: Optional[str] = None
    note: str = ""
    currency: Optional[str] = None
    card: Optional[str] = None
    count_as_income: bool = False
    is_savings: bool = False

    @property
    def refund_for(self) -> Optional[str]:
        """Return the expense id referenced by a ``[refund_for:<id>]`` tag."""

        match = REFUND_TAG.search(self.note or "")
        if match is None:
            return None
        return match.group(1).strip() or None

    @property
    def is_refund(self) -> bool:
        return self.amount > 0 and self.refund_for is not None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Transaction":
        card_id = payload.get("card_id")
        transfer_id = payload.get("transfer_id")
        currency = payload.get("currency")
        return cls(
            id=str(payload["id"]),
            amount=_to_float(payload.get("amount")),
            created_at=_parse_datetime(payload.get("created_at")),
            card_id=str(card_id) if card_id not in (None, "") else None,
            category=payload.get("category"),
            archives=_to_bool(payload.get("archives")),
            is_transfer=_to_bool(payload.get("is_transfer")),
            transfer_id=str(transfer_id) if transfer_id not in (None, "") else None,
            transfer_role=payload.get("transfer_role") or None,
            note=str(payload.get("note") or ""),
            currency=str(currency).upper() if currency else None,
            card=payload.get("card"),
            count_as_income=_to_bool(payload.get("count_as_income")),
            is_savings=_to_bool(payload.get("is_savings")),
        )


@dataclass(slots=True)
class BalanceDeltaEvent:
    """Signed balance adjustment broadcast after a mutation.

    ``card_id`` is ``None`` for cash. ``type`` is optional; emitters that only
    know the delta (for example a transfer form) leave it unset.
    """

    card_id: Optional[str]
    delta: float
    type: Optional[str] = None
    transaction: Optional[dict[str, Any]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.type is not None and self.type not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {self.type}")


def transaction_currency(transaction: Transaction, cards: Mapping[str, Card]) -> str:
    """Resolve the currency a transaction is denominated in.

    The explicit ``currency`` field wins, then the owning card's currency.
    Cash transactions without an explicit currency are in UAH.
    """

    if transaction.currency:
        return transaction.currency
    if transaction.card_id is not None:
        card = cards.get(transaction.card_id)
        if card is not None:
            return card.currency
    return BASE_CURRENCY


def index_cards(cards: Any) -> dict[str, Card]:
    """Return a ``{card_id: Card}`` lookup from a list or mapping of cards."""

    if isinstance(cards, Mapping):
        return dict(cards)
    return {card.id: card for card in cards or ()}


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------

def _to_float(value: object) -> float:
    if value is None or value == "":
        return 0.0
    return float(value)


def _to_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _parse_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    if value is None or not str(value).strip():
        raise ValueError("Transaction payload is missing created_at")
    return date_parser.isoparse(str(value))


__all__ = [
    "BASE_CURRENCY",
    "BalanceDeltaEvent",
    "Card",
    "Transaction",
    "has_marker",
    "index_cards",
    "transaction_currency",
]
