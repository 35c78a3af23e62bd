"""Cache + sync observability API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from usagedash.db.file_watcher import file_watcher
from usagedash.models import CacheInvalidateRequest, CacheInvalidateResponse

logger = logging.getLogger("usagedash.cache")

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _get_cache(request: Request):
    cache = getattr(request.app.state, "result_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Result cache not initialized")
    return cache


@cache_router.get("/status")
async def get_cache_status(request: Request):
    """Return sync engine, watcher, and result cache status."""
    sync_engine = _get_sync_engine(request)
    cache = _get_cache(request)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "sync_engine": "ready",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "home": str(sync_engine.home),
        "cache": cache.stats(),
        "operations": observability,
    }


@cache_router.post("/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(request: Request, body: CacheInvalidateRequest):
    """Evict by prefix, by exact key, or everything when neither is given."""
    cache = _get_cache(request)
    prefix = (body.prefix or "").strip()
    key = (body.key or "").strip()
    if prefix:
        evicted = cache.invalidate_prefix(prefix)
        logger.info("Cache invalidated by prefix %s (%d keys)", prefix, evicted)
        return CacheInvalidateResponse(scope="prefix", target=prefix, evicted=evicted)
    if key:
        cache.invalidate(key)
        logger.info("Cache invalidated for key %s", key)
        return CacheInvalidateResponse(scope="key", target=key)
    cache.invalidate()
    logger.info("Cache cleared")
    return CacheInvalidateResponse(scope="all")
