"""Usage analytics and ingestion API."""
from __future__ import annotations

import logging
from typing import Any, Awaitable

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from usagedash.models import UsageSyncRequest, UsageSyncResponse
from usagedash.services.usage_export import EXPORT_FORMATS, export_filename, render_usage_csv
from usagedash.services.usage_query import UsageQueryError

logger = logging.getLogger("usagedash.api")

usage_router = APIRouter(prefix="/api/usage", tags=["usage"])


def _get_query_service(request: Request):
    service = getattr(request.app.state, "usage_query", None)
    if not service:
        raise HTTPException(status_code=503, detail="Usage query service not initialized")
    return service


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _params(request: Request) -> dict[str, Any]:
    # `from` is a keyword, so filters are read from the raw query string.
    return dict(request.query_params)


async def _answer(call: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    try:
        return await call
    except UsageQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@usage_router.get("/summary")
async def get_usage_summary(request: Request):
    """Totals and a zero-filled daily/weekly/monthly series."""
    params = _params(request)
    service = _get_query_service(request)
    return await _answer(service.get_summary(params, params.get("range") or "daily"))


@usage_router.get("/breakdown")
async def get_usage_breakdown(request: Request):
    """Usage grouped by agent, model, provider, source, session class or tool."""
    params = _params(request)
    service = _get_query_service(request)
    return await _answer(service.get_breakdown(params.get("groupBy") or "model", params))


@usage_router.get("/sessions")
async def get_usage_sessions(request: Request):
    service = _get_query_service(request)
    return await _answer(service.get_sessions(_params(request)))


@usage_router.get("/activity")
async def get_usage_activity(request: Request):
    """Weekday and hour-of-day distribution in the requested timezone."""
    service = _get_query_service(request)
    return await _answer(service.get_activity(_params(request)))


@usage_router.get("/options")
async def get_usage_options(request: Request):
    service = _get_query_service(request)
    return await _answer(service.get_options(_params(request)))


@usage_router.get("/parity")
async def get_usage_parity(request: Request):
    """Most-recent-sessions sample and the files it still needs ingested."""
    service = _get_query_service(request)
    return await _answer(service.get_parity_scope(_params(request)))


@usage_router.get("/export")
async def export_usage(request: Request):
    """Summary series plus the per-model breakdown as a CSV download, or JSON with `format=json`."""
    params = _params(request)
    export_format = (params.get("format") or "csv").lower()
    if export_format not in EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {export_format}")
    service = _get_query_service(request)
    summary = await _answer(service.get_summary(params, "daily"))
    breakdown = await _answer(service.get_breakdown("model", params))
    if export_format == "json":
        return {"data": {"summary": summary, "breakdown": breakdown}}
    return Response(
        content=render_usage_csv(summary, breakdown),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )


@usage_router.post("/sync", response_model=UsageSyncResponse)
async def trigger_usage_sync(request: Request, body: UsageSyncRequest):
    """Run one bounded ingestion pass in the foreground."""
    sync_engine = _get_sync_engine(request)
    stats = await sync_engine.run_sync(
        max_ms=body.maxMs,
        max_files=body.maxFiles,
        force=body.force,
        priority_paths=body.priorityPaths,
        trigger="api",
    )
    if not stats.get("lockAcquired", True):
        logger.info("Usage sync request skipped: ingestion lease busy")
    return stats
