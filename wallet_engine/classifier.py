"""Decide which transactions count toward income and expense figures.

Savings cards, internal transfers and refunds would distort the income and
expense charts if they were summed naively. The rules implemented by
:class:`TransactionClassifier` are:

1. Archived transactions never count.
2. Ordinary transactions count by sign unless they sit on a savings card.
3. A transfer between two savings cards or two regular cards is an internal
   move and is ignored. When exactly one side is a savings card, only the
   regular card's leg counts: as income when money left savings, as an
   expense when money was put aside.
4. A transfer whose sibling leg is missing falls back to the leg's flags.
5. Credits tagged ``[refund_for:<id>]`` are not income; they reduce the
   displayed amount of the expense they refer to.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from .currency import CurrencyConverter, normalize_currency
from .models import BINANCE_MARKERS, SAVINGS_MARKERS, Card, Transaction, has_marker, index_cards, transaction_currency

EARNING = "earning"
SPENDING = "spending"
MODES = (EARNING, SPENDING)

ALL_CURRENCIES = "ALL"

TRANSFER_CATEGORY = "ТРАНСФЕР"
REFUND_CATEGORY = "ПОВЕРНЕННЯ"


@dataclass(frozen=True, slots=True)
class Classification:
    """Partition of transaction ids for one currency filter.

    Every input id lands in exactly one of the three sets.
    """

    income: frozenset[str]
    expense: frozenset[str]
    excluded: frozenset[str]

    def included(self, mode: str) -> frozenset[str]:
        return self.income if _check_mode(mode) == EARNING else self.expense


class TransactionClassifier:
    """Rule-based classification of transactions against the user's cards."""

    def __init__(self, cards: Iterable[Card] | Mapping[str, Card] = ()) -> None:
        self._cards = index_cards(cards)

    @property
    def cards(self) -> dict[str, Card]:
        return dict(self._cards)

    # ------------------------------------------------------------------
    # Card-derived hints
    # ------------------------------------------------------------------
    def is_savings(self, transaction: Transaction) -> bool:
        """Return ``True`` when the transaction belongs to a savings account.

        The explicit flag on the transaction, the free-text card label stored
        on the transaction and the owning card's labels are all honoured.
        """

        if transaction.is_savings or has_marker(transaction.card, SAVINGS_MARKERS):
            return True
        card = self._cards.get(transaction.card_id) if transaction.card_id is not None else None
        return card is not None and card.is_savings

    def is_binance(self, transaction: Transaction) -> bool:
        if has_marker(transaction.card, BINANCE_MARKERS):
            return True
        card = self._cards.get(transaction.card_id) if transaction.card_id is not None else None
        return card is not None and card.is_binance

    def currency_of(self, transaction: Transaction) -> str:
        return transaction_currency(transaction, self._cards)

    # ------------------------------------------------------------------
    # Chart classification
    # ------------------------------------------------------------------
    def included_ids(
        self,
        transactions: Iterable[Transaction],
        mode: str,
        currency: Optional[str] = None,
    ) -> frozenset[str]:
        """Return the ids counted for ``mode`` under the currency filter.

        ``currency`` of ``None`` or ``"ALL"`` disables the filter.
        """

        mode = _check_mode(mode)
        wanted = _currency_filter(currency)
        included: set[str] = set()
        groups: dict[str, list[Transaction]] = defaultdict(list)

        for txn in transactions:
            if txn.archives:
                continue
            if txn.is_transfer:
                if txn.transfer_id:
                    groups[txn.transfer_id].append(txn)
                continue
            if txn.is_refund:
                continue
            if self.is_savings(txn):
                continue
            if self._counts(txn, mode, wanted):
                included.add(txn.id)

        for legs in groups.values():
            leg = self._counted_transfer_leg(legs, mode, wanted)
            if leg is not None:
                included.add(leg.id)

        return frozenset(included)

    def classify(self, transactions: Sequence[Transaction], currency: Optional[str] = None) -> Classification:
        income = self.included_ids(transactions, EARNING, currency)
        expense = self.included_ids(transactions, SPENDING, currency)
        everything = {txn.id for txn in transactions}
        return Classification(
            income=income,
            expense=expense,
            excluded=frozenset(everything - income - expense),
        )

    def _counted_transfer_leg(
        self,
        legs: Sequence[Transaction],
        mode: str,
        wanted: Optional[str],
    ) -> Optional[Transaction]:
        source = next((leg for leg in legs if leg.transfer_role == "from"), None)
        target = next((leg for leg in legs if leg.transfer_role == "to"), None)

        if source is not None and target is not None:
            source_savings = self.is_savings(source)
            target_savings = self.is_savings(target)
            if source_savings == target_savings:
                return None
            # Money left savings: the receiving regular card earned it.
            if source_savings and mode == EARNING and self._counts(target, mode, wanted):
                return target
            # Money was put aside: the sending regular card spent it.
            if target_savings and mode == SPENDING and self._counts(source, mode, wanted):
                return source
            return None

        single = source or target
        if single is None:
            return None
        if single.transfer_role == "to" and single.count_as_income and not self.is_savings(single):
            if mode == EARNING and self._counts(single, mode, wanted):
                return single
        return None

    def _counts(self, transaction: Transaction, mode: str, wanted: Optional[str]) -> bool:
        if wanted is not None and self.currency_of(transaction) != wanted:
            return False
        if mode == SPENDING:
            return transaction.amount < 0
        return transaction.amount > 0

    # ------------------------------------------------------------------
    # Category view
    # ------------------------------------------------------------------
    def is_category_eligible(self, transaction: Transaction) -> bool:
        """Return ``True`` when a transaction belongs in the category breakdown."""

        if transaction.archives or transaction.is_transfer:
            return False
        category = (transaction.category or "").strip().upper()
        if category in (TRANSFER_CATEGORY, REFUND_CATEGORY):
            return False
        if transaction.refund_for is not None:
            return False
        return not (self.is_binance(transaction) or self.is_savings(transaction))

    # ------------------------------------------------------------------
    # Ledger refund netting
    # ------------------------------------------------------------------
    def net_display_amount(
        self,
        expense: Transaction,
        transactions: Iterable[Transaction],
        converter: Optional[CurrencyConverter] = None,
    ) -> float:
        """Return the expense amount reduced by the refunds linked to it.

        Refunds are converted to the expense's currency first. The result never
        changes sign: a refund larger than the expense nets to zero.
        """

        converter = converter or CurrencyConverter()
        if expense.amount >= 0:
            return expense.amount
        target = self.currency_of(expense)
        refunded = sum(
            converter.convert(refund.amount, self.currency_of(refund), target)
            for refund in transactions
            if not refund.archives and refund.is_refund and refund.refund_for == expense.id
        )
        return min(expense.amount + refunded, 0.0)

    def net_display_amounts(
        self,
        transactions: Sequence[Transaction],
        converter: Optional[CurrencyConverter] = None,
    ) -> dict[str, float]:
        """Return ``{expense_id: net amount}`` for every refunded expense."""

        converter = converter or CurrencyConverter()
        by_id = {txn.id: txn for txn in transactions}
        refunds: dict[str, list[Transaction]] = defaultdict(list)
        for txn in transactions:
            if not txn.archives and txn.is_refund and txn.refund_for in by_id:
                refunds[txn.refund_for].append(txn)

        return {
            expense_id: self.net_display_amount(by_id[expense_id], linked, converter)
            for expense_id, linked in refunds.items()
        }


def _check_mode(mode: str) -> str:
    if mode not in MODES:
        raise ValueError(f"Unsupported mode: {mode}")
    return mode


def _currency_filter(currency: Optional[str]) -> Optional[str]:
    normalized = normalize_currency(currency)
    if normalized == ALL_CURRENCIES:
        return None
    return normalized


__all__ = [
    "ALL_CURRENCIES",
    "Classification",
    "EARNING",
    "SPENDING",
    "TransactionClassifier",
]
