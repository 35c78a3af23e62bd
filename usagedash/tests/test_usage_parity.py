import os
import tempfile
import unittest
from pathlib import Path

from usagedash.async_cache import AsyncResultCache
from usagedash.db.connection import open_sqlite
from usagedash.db.repositories.usage_cursors import SqliteUsageCursorRepository
from usagedash.db.sqlite_migrations import run_migrations
from usagedash.db.sync_engine import stat_fingerprint
from usagedash.services.usage_parity import UsageParitySampler, normalize_session_limit

BASE_MTIME = 1_770_000_000  # 2026-02-02T02:40:00Z


class NormalizeSessionLimitTests(unittest.TestCase):
    def test_defaults_and_caps(self) -> None:
        self.assertEqual(normalize_session_limit(None), 1000)
        self.assertEqual(normalize_session_limit("abc"), 1000)
        self.assertEqual(normalize_session_limit(0), 1000)
        self.assertEqual(normalize_session_limit(-3), 1000)
        self.assertEqual(normalize_session_limit("25"), 25)
        self.assertEqual(normalize_session_limit(10_000), 5000)


class UsageParitySamplerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.home = Path(self._tmp.name)
        self.db = await open_sqlite(":memory:")
        await run_migrations(self.db)
        self.cache = AsyncResultCache()
        self.sampler = UsageParitySampler(self.db, self.cache, home=self.home)
        self.cursors = SqliteUsageCursorRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    def _write_sessions(self, count: int) -> list[Path]:
        sessions_dir = self.home / "agents" / "main" / "sessions"
        sessions_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for index in range(count):
            path = sessions_dir / f"s{index:04d}.jsonl"
            path.write_text('{"usage": {"input": 1}}\n', encoding="utf-8")
            os.utime(path, (BASE_MTIME + index, BASE_MTIME + index))
            paths.append(path)
        return paths

    async def test_samples_newest_sessions_up_to_default_limit(self) -> None:
        self._write_sessions(1005)

        scope = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z")

        self.assertEqual(scope["sessionLimit"], 1000)
        self.assertEqual(scope["sampledCount"], 1000)
        self.assertEqual(scope["sessionsInRangeTotal"], 1005)
        self.assertEqual(scope["sessionIdsSampled"][0], "s1004")
        self.assertEqual(scope["sessionIdsSampled"][-1], "s0005")
        self.assertEqual(scope["missingCoverageCount"], 1000)
        self.assertEqual(len(scope["priorityPaths"]), 1000)

    async def test_fully_ingested_files_are_not_priority_paths(self) -> None:
        paths = self._write_sessions(3)
        covered = paths[2]
        fingerprint = stat_fingerprint(str(covered))
        await self.cursors.upsert(
            {
                "source_path": str(covered),
                "agent_id": "main",
                "session_id": "s0002",
                "device_id": fingerprint.device_id,
                "inode": fingerprint.inode,
                "offset_bytes": fingerprint.size_bytes,
                "file_mtime_ms": fingerprint.mtime_ms,
                "file_size_bytes": fingerprint.size_bytes,
            }
        )
        partial = paths[1]
        partial_fp = stat_fingerprint(str(partial))
        await self.cursors.upsert(
            {
                "source_path": str(partial),
                "agent_id": "main",
                "session_id": "s0001",
                "device_id": partial_fp.device_id,
                "inode": partial_fp.inode,
                "offset_bytes": 0,
                "file_mtime_ms": partial_fp.mtime_ms,
                "file_size_bytes": partial_fp.size_bytes,
            }
        )
        await self.db.commit()

        scope = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z", 10)
        self.assertEqual(scope["sampledCount"], 3)
        self.assertEqual(scope["missingCoverageCount"], 2)
        self.assertNotIn(str(covered), scope["priorityPaths"])
        self.assertIn(str(partial), scope["priorityPaths"])

    async def test_files_older_than_window_start_are_excluded(self) -> None:
        self._write_sessions(2)
        old = self.home / "agents" / "main" / "sessions" / "old.jsonl"
        old.write_text("", encoding="utf-8")
        os.utime(old, (1_600_000_000, 1_600_000_000))

        scope = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z", 5)
        self.assertEqual(scope["sessionIdsSampled"], ["s0001", "s0000"])

    async def test_scope_is_cached_per_window_and_limit(self) -> None:
        self._write_sessions(2)
        first = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z", 5)
        self._write_sessions(3)
        cached = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z", 5)
        other_limit = await self.sampler.resolve_scope("2026-01-01T00:00:00.000Z", "2026-03-01T00:00:00.000Z", 6)

        self.assertEqual(first, cached)
        self.assertEqual(other_limit["sampledCount"], 3)


if __name__ == "__main__":
    unittest.main()
