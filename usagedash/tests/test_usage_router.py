import types
import unittest

from fastapi import HTTPException

from usagedash.async_cache import AsyncResultCache
from usagedash.models import CacheInvalidateRequest, UsageSyncRequest
from usagedash.routers import cache as cache_router
from usagedash.routers import usage as usage_router
from usagedash.services.usage_query import UsageQueryError


class _FakeQueryService:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def get_summary(self, params, range_type="daily"):
        self.calls.append(("summary", dict(params), range_type))
        if range_type not in {"daily", "weekly", "monthly"}:
            raise UsageQueryError(f"Unsupported range: {range_type}")
        return {
            "from": "2026-02-05T00:00:00.000Z",
            "to": "2026-02-05T23:59:59.999Z",
            "timezone": "UTC",
            "range": range_type,
            "totals": {"totalTokens": 1},
            "series": [
                {
                    "bucketStart": "2026-02-05T00:00:00.000Z",
                    "inputTokens": 1,
                    "outputTokens": 0,
                    "cacheReadTokens": 0,
                    "cacheWriteTokens": 0,
                    "totalTokens": 1,
                    "totalCostMicros": 25,
                }
            ],
        }

    async def get_breakdown(self, group_by, params):
        self.calls.append(("breakdown", dict(params), group_by))
        if group_by == "weekday":
            raise UsageQueryError("Unsupported groupBy: weekday")
        return {
            "groupBy": group_by,
            "groups": [{"key": 'gpt "mini", 5', "totalTokens": 1, "totalCostMicros": 25, "sessionCount": 1}],
        }

    async def get_sessions(self, params):
        self.calls.append(("sessions", dict(params)))
        return {"rows": []}

    async def get_activity(self, params):
        self.calls.append(("activity", dict(params)))
        return {"hours": []}

    async def get_options(self, params):
        self.calls.append(("options", dict(params)))
        return {"agents": []}

    async def get_parity_scope(self, params):
        self.calls.append(("parity", dict(params)))
        return {"sessionIdsSampled": ["s1"]}


class _FakeSyncEngine:
    def __init__(self, lock_acquired: bool = True) -> None:
        self.lock_acquired = lock_acquired
        self.sync_calls: list[dict] = []
        self.home = "/tmp/openclaw"

    async def run_sync(self, max_ms=None, max_files=None, force=False, priority_paths=None, trigger="api"):
        self.sync_calls.append(
            {
                "max_ms": max_ms,
                "max_files": max_files,
                "force": force,
                "priority_paths": priority_paths,
                "trigger": trigger,
            }
        )
        return {"ok": True, "lockAcquired": self.lock_acquired, "force": force, "filesScanned": 2}

    async def get_observability_snapshot(self):
        return {"leaseHeld": False, "passCount": 3}


def _request(query_params=None, **state):
    return types.SimpleNamespace(
        query_params=query_params or {},
        app=types.SimpleNamespace(state=types.SimpleNamespace(**state)),
    )


class UsageRouterTests(unittest.IsolatedAsyncioTestCase):
    async def test_summary_reads_range_and_filters_from_query_string(self) -> None:
        service = _FakeQueryService()
        request = _request({"range": "weekly", "from": "2026-02-01", "agentId": "main"}, usage_query=service)

        payload = await usage_router.get_usage_summary(request)

        self.assertEqual(payload["range"], "weekly")
        self.assertEqual(service.calls[0][1]["from"], "2026-02-01")
        self.assertEqual(service.calls[0][2], "weekly")

    async def test_invalid_parameters_map_to_400(self) -> None:
        service = _FakeQueryService()
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_usage_breakdown(_request({"groupBy": "weekday"}, usage_query=service))
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_usage_summary(_request({"range": "yearly"}, usage_query=service))
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_breakdown_defaults_to_model(self) -> None:
        service = _FakeQueryService()
        payload = await usage_router.get_usage_breakdown(_request(usage_query=service))
        self.assertEqual(payload["groupBy"], "model")

    async def test_other_views_pass_filters_through(self) -> None:
        service = _FakeQueryService()
        request = _request({"q": "cron"}, usage_query=service)
        await usage_router.get_usage_sessions(request)
        await usage_router.get_usage_activity(request)
        await usage_router.get_usage_options(request)
        await usage_router.get_usage_parity(request)
        self.assertEqual([call[0] for call in service.calls], ["sessions", "activity", "options", "parity"])
        self.assertTrue(all(call[1] == {"q": "cron"} for call in service.calls))

    async def test_export_defaults_to_quoted_csv(self) -> None:
        service = _FakeQueryService()
        response = await usage_router.export_usage(_request({"agentId": "main"}, usage_query=service))

        self.assertEqual(response.media_type, "text/csv; charset=utf-8")
        self.assertRegex(
            response.headers["content-disposition"],
            r'^attachment; filename="usage-export-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.csv"$',
        )
        self.assertEqual(
            response.body.decode("utf-8").split("\n"),
            [
                '"from","2026-02-05T00:00:00.000Z"',
                '"to","2026-02-05T23:59:59.999Z"',
                '"timezone","UTC"',
                "",
                '"daily_series"',
                '"dayStart","inputTokens","outputTokens","cacheReadTokens","cacheWriteTokens","totalTokens","totalCostMicros"',
                '"2026-02-05T00:00:00.000Z","1","0","0","0","1","25"',
                "",
                '"model_breakdown"',
                '"key","totalTokens","totalCostMicros","sessionCount"',
                '"gpt ""mini"", 5","1","25","1"',
                "",
            ],
        )
        self.assertEqual(
            [(call[0], call[2]) for call in service.calls], [("summary", "daily"), ("breakdown", "model")]
        )
        self.assertEqual(service.calls[1][1]["agentId"], "main")

    async def test_export_json_wraps_summary_and_breakdown(self) -> None:
        service = _FakeQueryService()
        payload = await usage_router.export_usage(_request({"format": "JSON"}, usage_query=service))
        self.assertEqual(payload["data"]["summary"]["timezone"], "UTC")
        self.assertEqual(payload["data"]["breakdown"]["groupBy"], "model")

    async def test_export_rejects_unknown_format(self) -> None:
        service = _FakeQueryService()
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.export_usage(_request({"format": "xlsx"}, usage_query=service))
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(service.calls, [])

    async def test_missing_services_return_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_usage_summary(_request())
        self.assertEqual(ctx.exception.status_code, 503)

        with self.assertRaises(HTTPException) as ctx:
            await usage_router.trigger_usage_sync(_request(), UsageSyncRequest())
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_sync_forwards_body_to_engine(self) -> None:
        engine = _FakeSyncEngine()
        body = UsageSyncRequest(maxMs=500, maxFiles=10, force=True, priorityPaths=["/a.jsonl"])

        payload = await usage_router.trigger_usage_sync(_request(sync_engine=engine), body)

        self.assertTrue(payload["lockAcquired"])
        self.assertEqual(
            engine.sync_calls,
            [{"max_ms": 500, "max_files": 10, "force": True, "priority_paths": ["/a.jsonl"], "trigger": "api"}],
        )

    async def test_sync_reports_contended_lease(self) -> None:
        engine = _FakeSyncEngine(lock_acquired=False)
        payload = await usage_router.trigger_usage_sync(_request(sync_engine=engine), UsageSyncRequest())
        self.assertFalse(payload["lockAcquired"])


class CacheRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.cache = AsyncResultCache()

        async def loader() -> str:
            return "v"

        for key in ("usage.summary:a", "usage.breakdown:b", "other:c"):
            await self.cache.get_or_load(key, loader)
        self.request = _request(sync_engine=_FakeSyncEngine(), result_cache=self.cache)

    async def test_status_reports_cache_and_engine(self) -> None:
        payload = await cache_router.get_cache_status(self.request)
        self.assertEqual(payload["cache"], {"entries": 3, "inFlight": 0})
        self.assertEqual(payload["operations"]["passCount"], 3)
        self.assertEqual(payload["watcher"], "stopped")

    async def test_invalidate_by_prefix_key_and_all(self) -> None:
        by_prefix = await cache_router.invalidate_cache(self.request, CacheInvalidateRequest(prefix="usage."))
        self.assertEqual((by_prefix.scope, by_prefix.evicted), ("prefix", 2))

        by_key = await cache_router.invalidate_cache(self.request, CacheInvalidateRequest(key="other:c"))
        self.assertEqual(by_key.scope, "key")
        self.assertEqual(self.cache.stats()["entries"], 0)

        everything = await cache_router.invalidate_cache(self.request, CacheInvalidateRequest())
        self.assertEqual(everything.scope, "all")

    async def test_missing_cache_returns_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.invalidate_cache(_request(), CacheInvalidateRequest())
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
