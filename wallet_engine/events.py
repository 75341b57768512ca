"""In-process event bus for optimistic balance updates.

After a mutation the engine emits a :class:`~wallet_engine.models.BalanceDeltaEvent`
so components holding balances can apply ``total += delta`` instead of
re-querying. Delivery is synchronous and in subscription order; a handler that
raises is logged and the remaining handlers still run. Nothing is persisted
and late subscribers see no history.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, TypeVar

from .cache import RefreshGate, RefreshSuperseded
from .models import BalanceDeltaEvent

logger = logging.getLogger(__name__)

E = TypeVar("E")


class EventBus(Generic[E]):
    """A typed publish/subscribe channel."""

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._handlers: list[Callable[[E], Any]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Callable[[E], Any]) -> Callable[[], None]:
        """Register ``handler`` and return a function that unregisters it.

        Subscribing the same handler twice keeps a single registration.
        """

        if self._closed:
            raise RuntimeError(f"Event bus {self.name!r} is closed")
        if handler not in self._handlers:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, event: E) -> int:
        """Deliver ``event`` to every handler; return how many succeeded."""

        if self._closed:
            return 0
        delivered = 0
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed on %s event bus", handler, self.name)
            else:
                delivered += 1
        return delivered

    def close(self) -> None:
        self._handlers.clear()
        self._closed = True


def delta_from_change(
    event_type: str,
    new: Optional[Mapping[str, Any]] = None,
    old: Optional[Mapping[str, Any]] = None,
) -> Optional[BalanceDeltaEvent]:
    """Translate a realtime row change into a balance delta.

    Archiving a row is equivalent to deleting it and restoring one to
    inserting it. Archived rows never count toward a balance, so inserting or
    deleting them yields ``None``.
    """

    event_type = (event_type or "").upper()
    if event_type == "INSERT" and new:
        if _archived(new):
            return None
        return BalanceDeltaEvent(
            type="INSERT",
            card_id=_card_id(new),
            delta=_amount(new),
            transaction=dict(new),
        )
    if event_type == "UPDATE" and new:
        if _archived(new):
            if old and _archived(old):
                return None
            return BalanceDeltaEvent(
                type="DELETE",
                card_id=_card_id(new),
                # The amount that counted is the one before archiving.
                delta=-_amount(old if old and "amount" in old else new),
                transaction=dict(new),
            )
        if old and _archived(old):
            return BalanceDeltaEvent(
                type="INSERT",
                card_id=_card_id(new),
                delta=_amount(new),
                transaction=dict(new),
            )
        return BalanceDeltaEvent(
            type="UPDATE",
            card_id=_card_id(new),
            delta=_amount(new) - _amount(old or {}),
            transaction=dict(new),
        )
    if event_type == "DELETE" and old:
        if _archived(old):
            return None
        return BalanceDeltaEvent(
            type="DELETE",
            card_id=_card_id(old),
            delta=-_amount(old),
            transaction=dict(old),
        )
    return None


class LiveBalances:
    """Per-card balances kept current by bus deltas.

    Deltas are applied optimistically. Event types listed in ``refresh_on``
    additionally schedule a full refresh through ``loader`` because the delta
    alone cannot tell, for example, that a new card appeared. Cash is tracked
    under the ``None`` key.
    """

    def __init__(
        self,
        bus: EventBus[BalanceDeltaEvent],
        loader: Optional[Callable[[], Awaitable[Mapping[Optional[str], float]]]] = None,
        refresh_on: tuple[str, ...] = ("INSERT",),
    ) -> None:
        self._balances: dict[Optional[str], float] = {}
        self._loader = loader
        self._refresh_on = frozenset(refresh_on)
        self._gate = RefreshGate("balances")
        self._background: Optional[asyncio.Task] = None
        self._unsubscribe = bus.subscribe(self.apply)

    def balance(self, card_id: Optional[str]) -> float:
        return self._balances.get(card_id, 0.0)

    def snapshot(self) -> dict[Optional[str], float]:
        return dict(self._balances)

    def apply(self, event: BalanceDeltaEvent) -> None:
        if event.delta:
            self._balances[event.card_id] = self._balances.get(event.card_id, 0.0) + event.delta
        if event.type in self._refresh_on and self._loader is not None:
            self.schedule_refresh()

    async def refresh(self) -> dict[Optional[str], float]:
        """Replace every balance with freshly loaded values.

        Raises :class:`~wallet_engine.cache.RefreshSuperseded` when a newer
        refresh started meanwhile; the newer one then owns the state.
        """

        if self._loader is None:
            return self.snapshot()
        balances = await self._gate.submit(self._loader)
        self._balances = dict(balances)
        return self.snapshot()

    def clear(self) -> None:
        self._gate.cancel_pending()
        self._balances = {}

    def schedule_refresh(self) -> None:
        """Start a background refresh; failures are logged, not raised."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping balance refresh")
            return
        self._background = loop.create_task(self._refresh_quietly())

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except RefreshSuperseded:
            logger.debug("Balance refresh superseded by a newer one")
        except Exception:
            logger.exception("Background balance refresh failed")

    async def wait_idle(self) -> None:
        """Wait for the most recent background refresh, if any."""

        if self._background is not None:
            await asyncio.gather(self._background, return_exceptions=True)

    def close(self) -> None:
        self._unsubscribe()
        self._gate.cancel_pending()
        if self._background is not None and not self._background.done():
            self._background.cancel()


def _archived(row: Mapping[str, Any]) -> bool:
    value = row.get("archives")
    return value is True or value == "true"


def _card_id(row: Mapping[str, Any]) -> Optional[str]:
    value = row.get("card_id")
    if value in (None, ""):
        return None
    return str(value)


def _amount(row: Mapping[str, Any]) -> float:
    try:
        return float(row.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


__all__ = ["EventBus", "LiveBalances", "delta_from_change"]
