import asyncio
import unittest

from usagedash.async_cache import AsyncResultCache


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class AsyncResultCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_callers_share_one_load(self) -> None:
        cache = AsyncResultCache()
        calls = 0
        release = asyncio.Event()

        async def loader() -> dict:
            nonlocal calls
            calls += 1
            await release.wait()
            return {"value": 42}

        first = asyncio.create_task(cache.get_or_load("usage.summary:x", loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("usage.summary:x", loader))
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(first, second)

        self.assertEqual(calls, 1)
        self.assertEqual(results[0].value, {"value": 42})
        self.assertFalse(results[0].shared_in_flight)
        self.assertTrue(results[1].shared_in_flight)
        self.assertEqual(results[1].value, {"value": 42})

    async def test_hit_within_ttl_and_reload_after_expiry(self) -> None:
        clock = _Clock()
        cache = AsyncResultCache(ttl_ms=15_000, clock=clock)
        values = iter([1, 2])

        async def loader() -> int:
            return next(values)

        first = await cache.get_or_load("k", loader)
        clock.now += 10
        second = await cache.get_or_load("k", loader)
        clock.now += 6
        third = await cache.get_or_load("k", loader)

        self.assertEqual((first.value, first.cache_hit), (1, False))
        self.assertEqual((second.value, second.cache_hit), (1, True))
        self.assertEqual((third.value, third.cache_hit), (2, False))

    async def test_expired_entries_are_evicted(self) -> None:
        clock = _Clock()
        cache = AsyncResultCache(ttl_ms=15_000, clock=clock)

        async def loader() -> str:
            return "v"

        for index in range(5000):
            clock.now += 60
            await cache.get_or_load(f"usage.summary:window={index}", loader)

        self.assertEqual(cache.stats(), {"entries": 1, "inFlight": 0})

    async def test_entry_count_is_bounded_by_maxsize(self) -> None:
        cache = AsyncResultCache(ttl_ms=15_000, maxsize=2)

        async def loader() -> str:
            return "v"

        for key in ("a", "b", "c"):
            await cache.get_or_load(key, loader)

        self.assertEqual(cache.stats()["entries"], 2)
        result = await cache.get_or_load("c", loader)
        self.assertTrue(result.cache_hit)

    async def test_failures_propagate_to_all_waiters_and_are_not_cached(self) -> None:
        cache = AsyncResultCache()
        release = asyncio.Event()
        attempts = 0

        async def failing() -> int:
            nonlocal attempts
            attempts += 1
            await release.wait()
            raise RuntimeError("boom")

        first = asyncio.create_task(cache.get_or_load("k", failing))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("k", failing))
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(first, second, return_exceptions=True)
        self.assertTrue(all(isinstance(result, RuntimeError) for result in results))
        self.assertEqual(attempts, 1)

        async def ok() -> int:
            return 7

        result = await cache.get_or_load("k", ok)
        self.assertEqual(result.value, 7)
        self.assertFalse(result.cache_hit)

    async def test_invalidate_prefix_and_all(self) -> None:
        cache = AsyncResultCache()

        async def loader() -> str:
            return "v"

        for key in ("usage.summary:a", "usage.breakdown:b", "other:c"):
            await cache.get_or_load(key, loader)

        self.assertEqual(cache.invalidate_prefix("usage."), 2)
        self.assertEqual(cache.stats(), {"entries": 1, "inFlight": 0})
        cache.invalidate("other:c")
        self.assertEqual(cache.stats()["entries"], 0)

        await cache.get_or_load("usage.summary:a", loader)
        cache.invalidate()
        self.assertEqual(cache.stats()["entries"], 0)

    async def test_value_loaded_across_invalidation_is_not_stored(self) -> None:
        cache = AsyncResultCache()
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "stale"

        task = asyncio.create_task(cache.get_or_load("usage.summary:a", slow))
        await asyncio.sleep(0)
        cache.invalidate_prefix("usage.")
        release.set()
        result = await task

        self.assertEqual(result.value, "stale")
        self.assertEqual(cache.stats()["entries"], 0)


if __name__ == "__main__":
    unittest.main()
