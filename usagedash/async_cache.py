"""Short-TTL async result cache with in-flight request coalescing.

One `AsyncResultCache` is created at app startup and handed to the sync
engine, the query service, and the parity sampler. Nothing in this module is
a process-wide singleton: tests build their own instance.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from cachetools import TTLCache

from usagedash import config
from usagedash.observability import record_cache_result

logger = logging.getLogger("usagedash.cache")

T = TypeVar("T")


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    """Value plus how it was obtained.

    `cache_hit` is true for a stored value younger than the TTL.
    `shared_in_flight` is true when the caller awaited a load started by a
    concurrent caller with the same key.
    """

    value: T
    cache_hit: bool = False
    shared_in_flight: bool = False


class AsyncResultCache:
    """Coalesces concurrent loads per key and keeps results for one TTL.

    Stored values live in a bounded `TTLCache`: entries expire after the TTL
    and the least recently used are evicted once `maxsize` is reached.
    """

    def __init__(
        self,
        ttl_ms: int | None = None,
        maxsize: int | None = None,
        clock: Callable[[], float] | None = None,
    ):
        ttl_seconds = max(1, config.QUERY_TTL_MS if ttl_ms is None else ttl_ms) / 1000
        self._entries: TTLCache = TTLCache(
            maxsize=max(1, config.QUERY_CACHE_MAX_ENTRIES if maxsize is None else maxsize),
            ttl=ttl_seconds,
            timer=clock or time.monotonic,
        )
        self._in_flight: dict[str, asyncio.Future] = {}
        self._generation = 0

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[T]]) -> CacheResult[T]:
        try:
            cached = self._entries[key]
        except KeyError:
            pass
        else:
            record_cache_result(key, "hit")
            return CacheResult(value=cached, cache_hit=True)

        pending = self._in_flight.get(key)
        if pending is not None:
            record_cache_result(key, "shared")
            value = await asyncio.shield(pending)
            return CacheResult(value=value, shared_in_flight=True)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._in_flight[key] = future
        generation = self._generation
        record_cache_result(key, "miss")
        try:
            value = await loader()
        except BaseException as exc:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]
            if not future.done():
                future.set_exception(exc)
                # Retrieve so an unobserved failure does not log a warning.
                future.exception()
            raise

        if self._in_flight.get(key) is future:
            del self._in_flight[key]
        # A value loaded across an invalidation may predate the invalidating write.
        if generation == self._generation:
            self._entries[key] = value
        if not future.done():
            future.set_result(value)
        return CacheResult(value=value)

    def invalidate(self, key: str | None = None) -> None:
        """Evict one key, or everything when `key` is None."""
        if key is None:
            self._entries.clear()
            self._in_flight.clear()
            self._generation += 1
            logger.debug("Async cache cleared")
            return
        self._entries.pop(key, None)
        self._in_flight.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        self._entries.expire()
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            self._entries.pop(key, None)
        for key in [key for key in self._in_flight if key.startswith(prefix)]:
            del self._in_flight[key]
        self._generation += 1
        if keys:
            logger.debug("Async cache evicted %d keys with prefix %s", len(keys), prefix)
        return len(keys)

    def stats(self) -> dict[str, int]:
        self._entries.expire()
        return {
            "entries": len(self._entries),
            "inFlight": len(self._in_flight),
        }
