import unittest

from watchfiles import Change

from usagedash.db.file_watcher import FileWatcher
from usagedash.db.ingestion_lease import IngestionLeases


class IngestionLeaseTests(unittest.IsolatedAsyncioTestCase):
    async def test_second_holder_is_refused_until_release(self) -> None:
        leases = IngestionLeases()
        self.assertTrue(leases.try_acquire("usage-sync"))
        self.assertFalse(leases.try_acquire("usage-sync"))
        self.assertTrue(leases.try_acquire("other"))
        self.assertIsNotNone(leases.held_since("usage-sync"))

        leases.release("usage-sync")
        self.assertFalse(leases.is_held("usage-sync"))
        self.assertTrue(leases.try_acquire("usage-sync"))

    async def test_hold_releases_on_exit_and_on_error(self) -> None:
        leases = IngestionLeases()
        async with leases.hold("usage-sync") as acquired:
            self.assertTrue(acquired)
            async with leases.hold("usage-sync") as nested:
                self.assertFalse(nested)
            self.assertTrue(leases.is_held("usage-sync"))
        self.assertFalse(leases.is_held("usage-sync"))

        with self.assertRaises(RuntimeError):
            async with leases.hold("usage-sync"):
                raise RuntimeError("boom")
        self.assertFalse(leases.is_held("usage-sync"))


class FileWatcherClassificationTests(unittest.TestCase):
    def test_keeps_added_and_modified_session_logs(self) -> None:
        watcher = FileWatcher()
        changes = {
            (Change.modified, "/h/agents/main/sessions/b.jsonl"),
            (Change.added, "/h/agents/main/sessions/a.jsonl"),
            (Change.modified, "/h/agents/main/sessions/a.jsonl"),
            (Change.deleted, "/h/agents/main/sessions/c.jsonl"),
            (Change.modified, "/h/agents/main/notes.md"),
        }
        self.assertEqual(
            watcher._classify_changes(changes),
            ["/h/agents/main/sessions/a.jsonl", "/h/agents/main/sessions/b.jsonl"],
        )


if __name__ == "__main__":
    unittest.main()
