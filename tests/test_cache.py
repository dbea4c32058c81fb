"""TTLCache tests."""

import asyncio

import pytest

from app.core.cache import MISSING, TTLCache


@pytest.fixture
def cache(clock):
    return TTLCache(ttl=10, clock=clock)


class TestTTLCache:

    def test_get_missing(self, cache):
        assert cache.get("nope") is MISSING

    def test_expires_at_ttl(self, cache, clock):
        cache.set("key", "value")

        clock.advance(9)
        assert cache.get("key") == "value"

        clock.advance(1)
        assert cache.get("key") is MISSING

    def test_none_is_a_cacheable_value(self, cache):
        cache.set("key", None)

        assert cache.get("key") is None

    def test_per_entry_ttl(self, cache, clock):
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)

        clock.advance(2)

        assert cache.get("short") is MISSING
        assert cache.get("long") == 2

    def test_invalidate_one_and_all(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is MISSING
        assert cache.get("b") == 2

        cache.invalidate()
        assert len(cache) == 0

    def test_max_entries_drops_soonest_expiry(self, clock):
        cache = TTLCache(ttl=10, clock=clock, max_entries=2)
        cache.set("first", 1)
        clock.advance(1)
        cache.set("second", 2)
        clock.advance(1)
        cache.set("third", 3)

        assert cache.get("first") is MISSING
        assert cache.get("second") == 2
        assert cache.get("third") == 3


class TestGetOrLoad:

    @pytest.mark.asyncio
    async def test_loads_once(self, cache):
        calls = []

        async def loader():
            calls.append(1)
            return "loaded"

        assert await cache.get_or_load("key", loader) == "loaded"
        assert await cache.get_or_load("key", loader) == "loaded"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_should_cache_false_skips(self, cache):
        calls = []

        async def loader():
            calls.append(1)
            return "unreachable"

        await cache.get_or_load("key", loader, should_cache=lambda v: v != "unreachable")
        await cache.get_or_load("key", loader, should_cache=lambda v: v != "unreachable")

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_loader_exception_not_cached(self, cache):
        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await cache.get_or_load("key", broken)

        assert cache.get("key") is MISSING

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self, cache):
        calls = []
        release = asyncio.Event()

        async def loader():
            calls.append(1)
            await release.wait()
            return "loaded"

        waiters = [asyncio.ensure_future(cache.get_or_load("key", loader)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*waiters) == ["loaded"] * 5
        assert len(calls) == 1
        assert cache.get("key") == "loaded"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_exception(self, cache):
        calls = []
        release = asyncio.Event()

        async def broken():
            calls.append(1)
            await release.wait()
            raise RuntimeError("boom")

        waiters = [asyncio.ensure_future(cache.get_or_load("key", broken)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert len(calls) == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert cache.get("key") is MISSING

    @pytest.mark.asyncio
    async def test_invalidate_during_load_starts_fresh(self, cache):
        release = asyncio.Event()

        async def stale():
            await release.wait()
            return "stale"

        async def fresh():
            return "fresh"

        first = asyncio.ensure_future(cache.get_or_load("key", stale))
        await asyncio.sleep(0)
        cache.invalidate("key")

        assert await cache.get_or_load("key", fresh) == "fresh"
        release.set()
        assert await first == "stale"
        assert cache.get("key") == "fresh"
