"""Named non-blocking leases that keep ingestion passes from overlapping."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from usagedash.date_utils import format_datetime_utc

logger = logging.getLogger("usagedash.sync")


class IngestionLeases:
    """Per-name try-acquire flags for a single event loop.

    Acquire and release never await, so no lock is needed between the
    membership check and the insert.
    """

    def __init__(self) -> None:
        self._held: dict[str, str] = {}

    def try_acquire(self, name: str) -> bool:
        if name in self._held:
            return False
        self._held[name] = format_datetime_utc(datetime.now(timezone.utc))
        return True

    def release(self, name: str) -> None:
        self._held.pop(name, None)

    def is_held(self, name: str) -> bool:
        return name in self._held

    def held_since(self, name: str) -> str | None:
        return self._held.get(name)

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        """Yield True while holding `name`, or False if another holder has it."""
        acquired = self.try_acquire(name)
        if not acquired:
            logger.info("Ingestion lease %s busy since %s", name, self._held.get(name))
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)
