"""Short-lived, request-deduplicating resource caches.

Several consumers ask for the same resources (cards, per-card sums,
preferences, rates) within a few milliseconds of each other. A
:class:`ResourceCache` answers fresh reads from memory, lets concurrent reads
share a single in-flight fetch and discards fetch results that resolve after
the cache was invalidated.

:class:`RefreshGate` covers the opposite problem: when a consumer re-queries
because its filters changed, the newer request must win and the older result
must be dropped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Generic, Mapping, Optional, TypeVar

from .config import EngineConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

CARDS = "cards"
SUMS = "sum-by-card"
TRANSACTIONS = "transactions"
PREFERENCES = "preferences"
RATES = "rates"


class ResourceCache(Generic[T]):
    """Cache for one resource with a time-to-live and request de-duplication.

    ``ttl`` of ``None`` keeps the value until :meth:`invalidate` is called.
    """

    def __init__(self, name: str, ttl: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._ttl = ttl
        self._clock = clock
        self._value: Optional[T] = None
        self._has_value = False
        self._fetched_at = 0.0
        self._in_flight: Optional[asyncio.Future[T]] = None
        self._generation = 0

    @property
    def ttl(self) -> Optional[float]:
        return self._ttl

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    def is_fresh(self) -> bool:
        if not self._has_value:
            return False
        if self._ttl is None:
            return True
        return self._clock() - self._fetched_at < self._ttl

    def peek(self) -> Optional[T]:
        """Return the cached value, fresh or stale, without fetching."""

        return self._value if self._has_value else None

    async def get(self, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value or fetch it, sharing concurrent fetches.

        A caller cancelled while waiting does not cancel the shared fetch.
        Fetch errors propagate to every waiting caller and leave the previous
        value untouched.
        """

        if self.is_fresh():
            logger.debug("Cache hit for %s", self.name)
            return self._value  # type: ignore[return-value]

        if self._in_flight is None:
            logger.debug("Fetching %s", self.name)
            self._in_flight = asyncio.ensure_future(self._fetch(fetch, self._generation))
        return await asyncio.shield(self._in_flight)

    async def _fetch(self, fetch: Callable[[], Awaitable[T]], generation: int) -> T:
        started = self._clock()
        try:
            value = await fetch()
        finally:
            # After an invalidate the marker may already belong to a newer fetch.
            if generation == self._generation:
                self._in_flight = None

        if generation == self._generation:
            self._value = value
            self._has_value = True
            self._fetched_at = started
        else:
            logger.debug("Discarding %s result fetched before invalidation", self.name)
        return value

    def set(self, value: T) -> None:
        """Store a value obtained elsewhere, for example after a local save."""

        self._generation += 1
        self._in_flight = None
        self._value = value
        self._has_value = True
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        """Drop the value and the in-flight marker so the next read refetches."""

        self._generation += 1
        self._value = None
        self._has_value = False
        self._fetched_at = 0.0
        self._in_flight = None


class CacheRegistry:
    """Named resource caches shared by every consumer of one engine."""

    def __init__(self, caches: Optional[Mapping[str, ResourceCache]] = None) -> None:
        self._caches: dict[str, ResourceCache] = dict(caches or {})

    @classmethod
    def from_config(cls, config: EngineConfig, clock: Callable[[], float] = time.monotonic) -> "CacheRegistry":
        registry = cls()
        registry.register(CARDS, config.cards_ttl, clock)
        registry.register(SUMS, config.sums_ttl, clock)
        registry.register(TRANSACTIONS, config.transactions_ttl, clock)
        registry.register(PREFERENCES, config.preferences_ttl, clock)
        registry.register(RATES, config.rates_ttl, clock)
        return registry

    def register(self, name: str, ttl: Optional[float], clock: Callable[[], float] = time.monotonic) -> ResourceCache:
        cache: ResourceCache = ResourceCache(name, ttl, clock)
        self._caches[name] = cache
        return cache

    def __getitem__(self, name: str) -> ResourceCache:
        return self._caches[name]

    def __contains__(self, name: object) -> bool:
        return name in self._caches

    def names(self) -> list[str]:
        return list(self._caches)

    def invalidate(self, *names: str) -> None:
        for name in names:
            self._caches[name].invalidate()

    def invalidate_all(self) -> None:
        for cache in self._caches.values():
            cache.invalidate()


class RefreshSuperseded(Exception):
    """Raised to the caller of a refresh that a newer refresh replaced.

    This is not a failure: the caller must simply not apply anything.
    """


class RefreshGate:
    """Latest-wins sequencing for refetches triggered by parameter changes."""

    def __init__(self, name: str = "refresh") -> None:
        self.name = name
        self._token = 0
        self._task: Optional[asyncio.Future] = None

    @property
    def token(self) -> int:
        return self._token

    async def submit(self, fetch: Callable[[], Awaitable[T]]) -> T:
        """Run ``fetch`` after cancelling the previous in-flight refresh.

        Raises :class:`RefreshSuperseded` when a newer :meth:`submit` call
        arrived before this one completed.
        """

        self._token += 1
        token = self._token
        self.cancel_pending()

        task = asyncio.ensure_future(fetch())
        self._task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if token != self._token:
                raise RefreshSuperseded(f"{self.name} #{token} superseded") from None
            raise
        finally:
            if self._task is task:
                self._task = None

        if token != self._token:
            raise RefreshSuperseded(f"{self.name} #{token} superseded")
        return result

    def cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


__all__ = [
    "CARDS",
    "CacheRegistry",
    "PREFERENCES",
    "RATES",
    "RefreshGate",
    "RefreshSuperseded",
    "ResourceCache",
    "SUMS",
    "TRANSACTIONS",
]
