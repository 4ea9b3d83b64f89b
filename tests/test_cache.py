import asyncio

import pytest

from localloop.core.cache import QueryCache


def test_get_or_fetch_caches_and_counts():
    cache = QueryCache()
    calls = []

    async def fetch():
        calls.append(1)
        return None

    async def scenario():
        await cache.get_or_fetch("membership", "p1", fetch)
        return await cache.get_or_fetch("membership", "p1", fetch)

    assert asyncio.run(scenario()) is None
    assert len(calls) == 1
    assert cache.contains("membership", "p1")
    assert cache.stats.as_dict()["hits"] == 1


def test_invalidate_namespace_only_drops_that_namespace():
    cache = QueryCache()
    cache.set("membership", "p1", "a")
    cache.set("join_requests", "n1", ["b"])

    cache.invalidate("membership")

    assert not cache.contains("membership", "p1")
    assert cache.get("join_requests", "n1") == ["b"]

    cache.invalidate()
    assert not cache.contains("join_requests", "n1")


def test_read_in_flight_during_invalidation_is_not_stored():
    cache = QueryCache()

    async def scenario():
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return "before-change"

        pending = asyncio.ensure_future(cache.get_or_fetch("membership", "p1", slow_fetch))
        await asyncio.sleep(0)
        cache.invalidate("membership")
        release.set()
        return await pending

    assert asyncio.run(scenario()) == "before-change"
    assert not cache.contains("membership", "p1")
    assert cache.stats.discarded == 1


def test_fetch_errors_propagate_and_are_not_cached():
    cache = QueryCache()

    async def broken():
        raise RuntimeError("authority down")

    with pytest.raises(RuntimeError):
        asyncio.run(cache.get_or_fetch("membership", "p1", broken))
    assert not cache.contains("membership", "p1")


def test_disabled_cache_always_fetches():
    cache = QueryCache(enabled=False)
    cache.set("membership", "p1", "x")

    assert cache.get("membership", "p1", "default") == "default"
    assert not cache.contains("membership", "p1")


def test_global_invalidate_discards_first_read_of_uncached_namespace():
    cache = QueryCache()

    async def scenario():
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return ["before-vouch"]

        pending = asyncio.ensure_future(cache.get_or_fetch("join_requests", "n1", slow_fetch))
        await asyncio.sleep(0)
        cache.invalidate()
        release.set()
        return await pending

    assert asyncio.run(scenario()) == ["before-vouch"]
    assert not cache.contains("join_requests", "n1")
    assert cache.stats.discarded == 1
