"""File watcher service using watchfiles.

Monitors the agents directory for session log changes and triggers an
incremental usage sync with the changed files at the front of the queue.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import awatch, Change

from usagedash.parsers.session_paths import SESSION_FILE_SUFFIXES

logger = logging.getLogger("usagedash.watcher")


class FileWatcher:
    """Background file watcher that triggers sync on change.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self, sync_engine, home: Path) -> None:
        """Start watching `<home>/agents` in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(sync_engine, Path(home) / "agents"))
        logger.info("File watcher started for %s", home)

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, sync_engine, agents_dir: Path) -> None:
        if not agents_dir.exists():
            logger.warning("Agents directory %s does not exist, watcher has nothing to monitor", agents_dir)
            self._running = False
            return

        logger.info("Watching %s", agents_dir)
        try:
            async for changes in awatch(agents_dir, stop_event=self._stop_event):
                if not self._running:
                    break

                changed = self._classify_changes(changes)
                if not changed:
                    continue
                logger.info("Detected %d session file changes, syncing...", len(changed))
                try:
                    await sync_engine.run_sync(priority_paths=changed, trigger="watch")
                except Exception as e:
                    logger.error("Error syncing changed session files: %s", e)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error("File watcher error: %s", e)
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[str]:
        """Session log paths that were added or modified, sorted.

        Deletions are ignored; the next pass simply no longer lists the file.
        """
        result = set()
        for change_type, path_str in changes:
            if Path(path_str).suffix not in SESSION_FILE_SUFFIXES:
                continue
            if change_type in (Change.modified, Change.added):
                result.add(path_str)
        return sorted(result)


# Singleton instance
file_watcher = FileWatcher()
