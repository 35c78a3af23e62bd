"""usagedash FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from usagedash import config
from usagedash.async_cache import AsyncResultCache
from usagedash.routers.usage import usage_router
from usagedash.routers.cache import cache_router

from usagedash.db import connection, migrations, sync_engine
from usagedash.db.file_watcher import file_watcher
from usagedash.db.ingestion_lease import IngestionLeases
from usagedash.observability import initialize as initialize_observability, shutdown as shutdown_observability
from usagedash.services.usage_parity import UsageParitySampler
from usagedash.services.usage_query import UsageQueryService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("usagedash")


async def run_sync_loop(sync: sync_engine.UsageSyncEngine) -> None:
    """Keep ingesting: re-trigger at once while files remain, else wait the interval."""
    delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
    if delay > 0:
        await asyncio.sleep(delay)

    trigger = "startup"
    while True:
        stats = None
        try:
            stats = await sync.run_sync(trigger=trigger)
        except Exception:
            # run_sync already logged the failure; retry after the interval.
            stats = None
        trigger = "background"

        if stats and stats.get("lockAcquired") and stats.get("filesRemaining", 0) > 0:
            await asyncio.sleep(0)
            continue
        await asyncio.sleep(max(1, config.SYNC_INTERVAL_SECONDS))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("usagedash backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Shared cache, lease table, engine, and query services
    cache = AsyncResultCache()
    sync = sync_engine.UsageSyncEngine(db, cache=cache, leases=IngestionLeases())
    parity = UsageParitySampler(db, cache)
    app.state.result_cache = cache
    app.state.sync_engine = sync
    app.state.usage_query = UsageQueryService(db, cache, parity=parity)

    # 4. Background ingestion loop
    logger.info("Starting usage ingestion loop for %s", sync.home)
    app.state.sync_task = asyncio.create_task(run_sync_loop(sync))

    # 5. Start File Watcher
    if config.WATCH_ENABLED:
        await file_watcher.start(sync, sync.home)

    yield

    logger.info("usagedash backend shutting down")

    if hasattr(app.state, "sync_task"):
        app.state.sync_task.cancel()
        try:
            await app.state.sync_task
        except asyncio.CancelledError:
            pass

    await file_watcher.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="usagedash API",
    description="Usage telemetry ingestion and aggregation API for agent session logs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(usage_router)
app.include_router(cache_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if file_watcher.is_running else "stopped",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("usagedash.main:app", host=config.HOST, port=config.PORT)
