"""Tests for cache.py - de-duplicating resource caches and refresh gates."""

import asyncio

import pytest

from wallet_engine.cache import (
    CARDS,
    PREFERENCES,
    SUMS,
    CacheRegistry,
    RefreshGate,
    RefreshSuperseded,
    ResourceCache,
)


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class CountingFetch:
    def __init__(self, value="value", delay=0.01) -> None:
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return f"{self.value}-{self.calls}"


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_fetch():
    """N concurrent reads on an empty cache trigger exactly one fetch."""
    cache = ResourceCache("cards", ttl=30)
    fetch = CountingFetch()

    results = await asyncio.gather(*(cache.get(fetch) for _ in range(5)))

    assert fetch.calls == 1
    assert set(results) == {"value-1"}
    assert not cache.in_flight


@pytest.mark.asyncio
async def test_fresh_value_is_served_until_ttl_expires():
    clock = Clock()
    cache = ResourceCache("sums", ttl=10, clock=clock)
    fetch = CountingFetch(delay=0)

    assert await cache.get(fetch) == "value-1"
    clock.now += 9
    assert await cache.get(fetch) == "value-1"
    clock.now += 2
    assert await cache.get(fetch) == "value-2"
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_without_ttl_value_lives_until_invalidated():
    clock = Clock()
    cache = ResourceCache("preferences", ttl=None, clock=clock)
    fetch = CountingFetch(delay=0)

    await cache.get(fetch)
    clock.now += 10_000
    assert await cache.get(fetch) == "value-1"

    cache.invalidate()
    assert cache.peek() is None
    assert await cache.get(fetch) == "value-2"


@pytest.mark.asyncio
async def test_result_fetched_before_invalidation_is_not_committed():
    """A fetch that settles after invalidate() must not populate the cache."""
    cache = ResourceCache("transactions", ttl=5)
    fetch = CountingFetch(delay=0.02)

    pending = asyncio.ensure_future(cache.get(fetch))
    await asyncio.sleep(0)
    assert cache.in_flight
    cache.invalidate()
    assert not cache.in_flight

    assert await pending == "value-1"
    assert cache.peek() is None
    assert not cache.is_fresh()


@pytest.mark.asyncio
async def test_fetch_error_propagates_and_allows_retry():
    cache = ResourceCache("cards", ttl=30)
    cache.set("old")
    cache.invalidate()

    async def broken():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await cache.get(broken)
    assert not cache.in_flight
    assert await cache.get(CountingFetch(delay=0)) == "value-1"


@pytest.mark.asyncio
async def test_cancelled_reader_does_not_cancel_shared_fetch():
    cache = ResourceCache("cards", ttl=30)
    fetch = CountingFetch(delay=0.02)

    first = asyncio.ensure_future(cache.get(fetch))
    second = asyncio.ensure_future(cache.get(fetch))
    await asyncio.sleep(0)
    first.cancel()

    assert await second == "value-1"
    assert first.cancelled()
    assert cache.peek() == "value-1"


def test_registry_uses_configured_lifetimes(config):
    registry = CacheRegistry.from_config(config)

    assert registry[CARDS].ttl == 30
    assert registry[SUMS].ttl == 10
    assert registry[PREFERENCES].ttl is None
    assert "rates" in registry
    assert set(registry.names()) == {"cards", "sum-by-card", "transactions", "preferences", "rates"}


def test_registry_invalidates_selected_caches(config):
    registry = CacheRegistry.from_config(config)
    registry[CARDS].set(["card"])
    registry[SUMS].set({"card": 1.0})

    registry.invalidate(SUMS)
    assert registry[CARDS].peek() == ["card"]
    assert registry[SUMS].peek() is None

    registry.invalidate_all()
    assert registry[CARDS].peek() is None


@pytest.mark.asyncio
async def test_newer_refresh_supersedes_older():
    """Only the latest refresh delivers a result."""
    gate = RefreshGate("chart")

    async def slow():
        await asyncio.sleep(0.05)
        return "old filters"

    async def fast():
        return "new filters"

    older = asyncio.ensure_future(gate.submit(slow))
    await asyncio.sleep(0)
    newer = await gate.submit(fast)

    assert newer == "new filters"
    with pytest.raises(RefreshSuperseded):
        await older
    assert gate.token == 2
