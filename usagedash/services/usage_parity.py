"""Bounded "most recent sessions" sample used to approximate full-range views."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from usagedash import config
from usagedash.async_cache import AsyncResultCache
from usagedash.date_utils import format_datetime_utc, resolve_range
from usagedash.db.factory import get_usage_cursor_repository
from usagedash.db.sync_engine import FileFingerprint, stat_fingerprint
from usagedash.parsers.session_paths import list_session_files, parse_session_identity

logger = logging.getLogger("usagedash.query")

PARITY_CACHE_PREFIX = "usage.parity.scope"


@dataclass(frozen=True)
class SessionCandidate:
    source_path: str
    session_id: str
    fingerprint: FileFingerprint


def normalize_session_limit(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return config.PARITY_SESSION_LIMIT
    if parsed <= 0:
        return config.PARITY_SESSION_LIMIT
    return min(config.PARITY_MAX_SESSION_LIMIT, parsed)


def empty_scope(start: datetime, end: datetime, limit: int) -> dict[str, Any]:
    return {
        "from": format_datetime_utc(start),
        "to": format_datetime_utc(end),
        "sessionLimit": limit,
        "sessionIdsSampled": [],
        "sampledCount": 0,
        "sessionsInRangeTotal": 0,
        "priorityPaths": [],
        "missingCoverageCount": 0,
    }


def list_session_candidates(home: Path, from_ms: int) -> list[SessionCandidate]:
    """Session files modified at or after `from_ms`, newest first.

    A file's mtime is its last write, so a session touched after the window
    ends may still hold activity inside it; only the lower bound filters.
    """
    candidates: list[SessionCandidate] = []
    for path in list_session_files(home):
        identity = parse_session_identity(path)
        if identity is None:
            continue
        fingerprint = stat_fingerprint(path)
        if fingerprint is None or fingerprint.mtime_ms < from_ms:
            continue
        candidates.append(SessionCandidate(path, identity.session_id, fingerprint))
    candidates.sort(key=lambda c: (-c.fingerprint.mtime_ms, c.source_path))
    return candidates


def has_cursor_coverage(cursor: dict | None, fingerprint: FileFingerprint) -> bool:
    """Fully ingested: same file identity, every byte consumed, unchanged since."""
    if not cursor:
        return False
    if str(cursor.get("device_id")) != fingerprint.device_id:
        return False
    if str(cursor.get("inode")) != fingerprint.inode:
        return False
    if int(cursor.get("offset_bytes") or 0) != fingerprint.size_bytes:
        return False
    if int(cursor.get("file_size_bytes") or 0) != fingerprint.size_bytes:
        return False
    return int(cursor.get("file_mtime_ms") or 0) == fingerprint.mtime_ms


class UsageParitySampler:
    def __init__(self, db: Any, cache: AsyncResultCache, home: str | Path | None = None):
        self.db = db
        self.cache = cache
        self.cursor_repo = get_usage_cursor_repository(db)
        self._home = Path(home) if home else None

    @property
    def home(self) -> Path:
        return self._home or config.get_openclaw_home()

    async def resolve_scope(
        self,
        from_value: Any = None,
        to_value: Any = None,
        session_limit: Any = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        start, end = resolve_range(from_value, to_value, config.DEFAULT_RANGE_DAYS, now=now)
        limit = normalize_session_limit(session_limit)
        key = (
            f"{PARITY_CACHE_PREFIX}:{format_datetime_utc(start)}:"
            f"{format_datetime_utc(end)}:limit={limit}"
        )

        async def load() -> dict[str, Any]:
            from_ms = int(start.timestamp() * 1000)
            candidates = await asyncio.to_thread(list_session_candidates, self.home, from_ms)
            sampled = candidates[:limit]
            cursors = await self.cursor_repo.get_many([c.source_path for c in sampled])

            sampled_ids = list(dict.fromkeys(c.session_id for c in sampled))
            total = len({c.session_id for c in candidates})
            priority_paths = [
                c.source_path
                for c in sampled
                if not has_cursor_coverage(cursors.get(c.source_path), c.fingerprint)
            ]
            logger.debug(
                "Parity scope sampled %d of %d sessions (%d uncovered)",
                len(sampled_ids),
                total,
                len(priority_paths),
            )
            return {
                **empty_scope(start, end, limit),
                "sessionIdsSampled": sampled_ids,
                "sampledCount": len(sampled_ids),
                "sessionsInRangeTotal": total,
                "priorityPaths": priority_paths,
                "missingCoverageCount": len(priority_paths),
            }

        result = await self.cache.get_or_load(key, load)
        return result.value
