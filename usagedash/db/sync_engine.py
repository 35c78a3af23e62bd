"""Incremental session log → usage aggregate sync engine.

Tails every `<home>/agents/<agentId>/sessions/<sessionId>.jsonl` file from
its stored byte cursor, parses only complete new lines, and folds them into
the session, hourly, daily, and tool aggregates. Passes are bounded by a
wall-clock budget and a file budget; callers re-trigger while
`filesRemaining > 0`.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import aiosqlite

from usagedash import config
from usagedash.async_cache import AsyncResultCache
from usagedash.date_utils import format_datetime_utc, start_of_utc_day, start_of_utc_hour
from usagedash.db.factory import (
    get_agent_session_repository,
    get_usage_aggregate_repository,
    get_usage_cursor_repository,
)
from usagedash.db.ingestion_lease import IngestionLeases
from usagedash.db.repositories.base import (
    AggregateStore,
    BucketUsageDelta,
    CursorStore,
    SessionMetadataLookup,
    SessionUsageDelta,
    UsageCounters,
)
from usagedash.db.sync_queue import build_sync_file_queue
from usagedash.observability import (
    record_skipped_lines,
    record_sync_pass,
    record_token_cost,
    start_span,
)
from usagedash.parsers.session_paths import SessionFileIdentity, list_session_files, parse_session_identity
from usagedash.parsers.usage_lines import ParsedUsageLine, parse_usage_line
from usagedash.session_classification import (
    derive_provider_key,
    derive_session_class,
    normalize_model_key,
)

logger = logging.getLogger("usagedash.sync")

USAGE_CACHE_PREFIX = "usage."

_STAT_KEYS = (
    "filesScanned",
    "filesUpdated",
    "sessionsUpdated",
    "toolsUpserted",
    "cursorResets",
    "linesParsed",
    "linesSkipped",
    "filesTotal",
    "filesRemaining",
)


def empty_sync_stats() -> dict[str, Any]:
    stats: dict[str, Any] = {key: 0 for key in _STAT_KEYS}
    stats["coveragePct"] = 0.0
    stats["durationMs"] = 0
    return stats


@dataclass(frozen=True)
class FileFingerprint:
    device_id: str
    inode: str
    size_bytes: int
    mtime_ms: int


@dataclass
class TailRead:
    lines: list[str]
    next_offset: int
    end_offset: int


@dataclass
class FileUsageDelta:
    """Everything one file's new lines contribute to the store."""

    session: UsageCounters = field(default_factory=UsageCounters)
    buckets: dict[tuple[str, str, str], BucketUsageDelta] = field(default_factory=dict)
    tool_days: dict[tuple[str, str], int] = field(default_factory=dict)
    tool_totals: dict[str, int] = field(default_factory=dict)
    model: str | None = None
    has_errors: bool = False
    first_seen_at: str | None = None
    last_seen_at: str | None = None
    lines: int = 0

    def add_line(self, agent_id: str, parsed: ParsedUsageLine) -> None:
        self.lines += 1
        seen_at = format_datetime_utc(parsed.seen_at)
        if self.first_seen_at is None or seen_at < self.first_seen_at:
            self.first_seen_at = seen_at
        if self.last_seen_at is None or seen_at > self.last_seen_at:
            self.last_seen_at = seen_at
        if parsed.model:
            self.model = parsed.model
        if parsed.has_error:
            self.has_errors = True

        day_start = format_datetime_utc(start_of_utc_day(parsed.seen_at))
        if parsed.has_usage:
            self.session.add(parsed)
            model_key = normalize_model_key(parsed.model)
            hour_start = format_datetime_utc(start_of_utc_hour(parsed.seen_at))
            for granularity, bucket in (("daily", day_start), ("hourly", hour_start)):
                key = (granularity, bucket, model_key)
                entry = self.buckets.get(key)
                if entry is None:
                    entry = BucketUsageDelta(agent_id=agent_id)
                    self.buckets[key] = entry
                if parsed.model:
                    entry.model = parsed.model
                entry.counters.add(parsed)

        for tool_name in parsed.tool_calls:
            day_key = (day_start, tool_name)
            self.tool_days[day_key] = self.tool_days.get(day_key, 0) + 1
            self.tool_totals[tool_name] = self.tool_totals.get(tool_name, 0) + 1


def stat_fingerprint(path: str) -> FileFingerprint | None:
    """Stat a file, or None when it vanished or is unreadable."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return FileFingerprint(
        device_id=str(st.st_dev),
        inode=str(st.st_ino),
        size_bytes=int(st.st_size),
        mtime_ms=int(st.st_mtime_ns // 1_000_000),
    )


def should_reset_cursor(cursor: dict, fingerprint: FileFingerprint) -> bool:
    if str(cursor.get("device_id")) != fingerprint.device_id:
        return True
    if str(cursor.get("inode")) != fingerprint.inode:
        return True
    if fingerprint.size_bytes < int(cursor.get("offset_bytes") or 0):
        return True
    # An older mtime with a different size means the file was rewritten.
    if (
        fingerprint.mtime_ms < int(cursor.get("file_mtime_ms") or 0)
        and fingerprint.size_bytes != int(cursor.get("file_size_bytes") or 0)
    ):
        return True
    return False


def is_cursor_current(cursor: dict | None, fingerprint: FileFingerprint) -> bool:
    """True when nothing complete is left to read for this file."""
    if cursor is None:
        return False
    if should_reset_cursor(cursor, fingerprint):
        return False
    offset = int(cursor.get("offset_bytes") or 0)
    if offset == fingerprint.size_bytes:
        return True
    # Only a trailing partial line remains if the file is unchanged since the last read.
    return (
        int(cursor.get("file_size_bytes") or 0) == fingerprint.size_bytes
        and int(cursor.get("file_mtime_ms") or 0) == fingerprint.mtime_ms
    )


def read_complete_lines(path: str, offset: int) -> TailRead:
    """Read from `offset` and return only newline-terminated lines."""
    with open(path, "rb") as handle:
        handle.seek(offset)
        data = handle.read()
    end_offset = offset + len(data)
    last_newline = data.rfind(b"\n")
    if last_newline < 0:
        return TailRead(lines=[], next_offset=offset, end_offset=end_offset)
    complete = data[: last_newline + 1]
    lines = complete.decode("utf-8", errors="replace").splitlines()
    return TailRead(lines=lines, next_offset=offset + last_newline + 1, end_offset=end_offset)


class UsageSyncEngine:
    """Bounded, resumable ingestion of session logs into usage aggregates."""

    def __init__(
        self,
        db: Any,  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        cache: AsyncResultCache | None = None,
        leases: IngestionLeases | None = None,
        home: str | Path | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.cursor_repo: CursorStore = get_usage_cursor_repository(db)
        self.aggregate_repo: AggregateStore = get_usage_aggregate_repository(db)
        self.session_meta_repo: SessionMetadataLookup = get_agent_session_repository(db)
        self.cache = cache
        self.leases = leases or IngestionLeases()
        self._home = Path(home) if home else None
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._ops_lock = asyncio.Lock()
        self._last_pass: dict[str, Any] | None = None
        self._pass_count = 0
        self._contended_count = 0
        self._last_error = ""

    @property
    def home(self) -> Path:
        return self._home or config.get_openclaw_home()

    # ── Trigger ─────────────────────────────────────────────────────

    async def run_sync(
        self,
        max_ms: int | None = None,
        max_files: int | None = None,
        force: bool = False,
        priority_paths: list[str] | None = None,
        trigger: str = "api",
    ) -> dict[str, Any]:
        """Take the ingestion lease, run one pass, and report its stats.

        A concurrent caller gets `lockAcquired: False` and zero stats
        immediately instead of waiting.
        """
        async with self.leases.hold(config.SYNC_LEASE_NAME) as acquired:
            if not acquired:
                async with self._ops_lock:
                    self._contended_count += 1
                record_sync_pass(trigger, "contended", 0)
                return {"ok": True, "lockAcquired": False, "force": bool(force), **empty_sync_stats()}

            t0 = time.monotonic()
            try:
                with start_span("usage.sync", {"trigger": trigger, "force": bool(force)}):
                    if force:
                        await self.reset_usage_data()
                    stats = await self.sync_usage_telemetry(
                        max_ms=max_ms,
                        max_files=max_files,
                        priority_paths=priority_paths,
                    )
            except Exception as exc:
                duration_ms = int((time.monotonic() - t0) * 1000)
                record_sync_pass(trigger, "error", duration_ms)
                # Files committed before the failure are already visible.
                if self.cache is not None:
                    self.cache.invalidate_prefix(USAGE_CACHE_PREFIX)
                async with self._ops_lock:
                    self._last_error = str(exc)
                logger.exception("Usage sync failed (trigger=%s)", trigger)
                raise

        if self.cache is not None and (force or stats["filesScanned"] > 0):
            self.cache.invalidate_prefix(USAGE_CACHE_PREFIX)

        record_sync_pass(trigger, "ok", stats["durationMs"])
        async with self._ops_lock:
            self._pass_count += 1
            self._last_error = ""
            self._last_pass = {
                "trigger": trigger,
                "force": bool(force),
                "finishedAt": format_datetime_utc(self._now()),
                "stats": dict(stats),
            }
        return {"ok": True, "lockAcquired": True, "force": bool(force), **stats}

    async def reset_usage_data(self) -> None:
        """Drop every cursor and aggregate so the next pass re-reads from byte 0."""
        async with self._write_transaction() as (cursor_repo, aggregate_repo):
            await aggregate_repo.reset_all()
            deleted = await cursor_repo.delete_all()
        logger.info("Usage data reset (%d cursors removed)", deleted)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            return {
                "leaseName": config.SYNC_LEASE_NAME,
                "leaseHeld": self.leases.is_held(config.SYNC_LEASE_NAME),
                "leaseHeldSince": self.leases.held_since(config.SYNC_LEASE_NAME),
                "passCount": self._pass_count,
                "contendedCount": self._contended_count,
                "lastPass": copy.deepcopy(self._last_pass),
                "lastError": self._last_error,
            }

    # ── Pass ────────────────────────────────────────────────────────

    async def sync_usage_telemetry(
        self,
        max_ms: int | None = None,
        max_files: int | None = None,
        priority_paths: list[str] | None = None,
    ) -> dict[str, Any]:
        """One bounded ingestion pass. The caller holds the ingestion lease."""
        budget_ms = config.SYNC_MAX_MS if max_ms is None else max(0, int(max_ms))
        budget_files = config.SYNC_MAX_FILES if max_files is None else max(0, int(max_files))
        t0 = time.monotonic()
        stats = empty_sync_stats()

        files = await asyncio.to_thread(list_session_files, self.home)
        fingerprints: dict[str, FileFingerprint] = {}
        for path in files:
            fingerprint = stat_fingerprint(path)
            if fingerprint is not None:
                fingerprints[path] = fingerprint
        files = [path for path in files if path in fingerprints]

        cursors = await self.cursor_repo.get_many(files)
        queue = build_sync_file_queue(
            files,
            cursors,
            priority_paths=[str(path) for path in priority_paths or []],
            file_mtime_ms_by_path={path: fp.mtime_ms for path, fp in fingerprints.items()},
        )

        metadata_cache: dict[str, dict | None] = {}
        sessions_updated: set[str] = set()

        for path in queue[:budget_files]:
            if stats["filesScanned"] > 0 and (time.monotonic() - t0) * 1000 > budget_ms:
                logger.info("Usage sync budget of %dms exhausted after %d files", budget_ms, stats["filesScanned"])
                break

            identity = parse_session_identity(path)
            if identity is None:
                continue
            # Re-stat: the file may have grown or vanished since listing.
            fingerprint = stat_fingerprint(path)
            if fingerprint is None:
                continue
            fingerprints[path] = fingerprint

            stats["filesScanned"] += 1
            cursor = await self._ingest_file(
                identity,
                fingerprint,
                cursors.get(path),
                metadata_cache,
                stats,
                sessions_updated,
            )
            if cursor is not None:
                cursors[path] = cursor

        stats["sessionsUpdated"] = len(sessions_updated)
        stats["filesTotal"] = len(files)
        stats["filesRemaining"] = sum(
            1 for path in files if not is_cursor_current(cursors.get(path), fingerprints[path])
        )
        if stats["filesTotal"]:
            covered = stats["filesTotal"] - stats["filesRemaining"]
            stats["coveragePct"] = round(covered * 100 / stats["filesTotal"], 2)
        else:
            stats["coveragePct"] = 100.0
        stats["durationMs"] = int((time.monotonic() - t0) * 1000)

        logger.info(
            "Usage sync pass: scanned=%d updated=%d sessions=%d resets=%d remaining=%d/%d (%dms)",
            stats["filesScanned"],
            stats["filesUpdated"],
            stats["sessionsUpdated"],
            stats["cursorResets"],
            stats["filesRemaining"],
            stats["filesTotal"],
            stats["durationMs"],
        )
        return stats

    @asynccontextmanager
    async def _write_transaction(self) -> AsyncIterator[tuple[CursorStore, AggregateStore]]:
        """Yield cursor and aggregate stores whose writes commit or roll back together."""
        if isinstance(self.db, aiosqlite.Connection):
            try:
                yield self.cursor_repo, self.aggregate_repo
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()
            return
        if not hasattr(self.db, "acquire"):
            async with self.db.transaction():
                yield self.cursor_repo, self.aggregate_repo
            return
        async with self.db.acquire() as conn:
            async with conn.transaction():
                yield get_usage_cursor_repository(conn), get_usage_aggregate_repository(conn)

    async def _ingest_file(
        self,
        identity: SessionFileIdentity,
        fingerprint: FileFingerprint,
        cursor: dict | None,
        metadata_cache: dict[str, dict | None],
        stats: dict[str, Any],
        sessions_updated: set[str],
    ) -> dict | None:
        reset = cursor is not None and should_reset_cursor(cursor, fingerprint)
        if reset:
            stats["cursorResets"] += 1
            logger.info("Cursor reset for %s (file replaced or truncated)", identity.source_path)
        offset = 0 if reset or cursor is None else int(cursor.get("offset_bytes") or 0)

        next_offset = offset
        size_bytes = fingerprint.size_bytes
        delta: FileUsageDelta | None = None
        if fingerprint.size_bytes > offset:
            try:
                tail = await asyncio.to_thread(read_complete_lines, identity.source_path, offset)
            except OSError as exc:
                logger.warning("Unable to read %s: %s", identity.source_path, exc)
                return cursor
            next_offset = tail.next_offset
            size_bytes = max(size_bytes, tail.end_offset)
            delta = self._parse_lines(identity.agent_id, tail.lines, stats)

        new_cursor = {
            "source_path": identity.source_path,
            "agent_id": identity.agent_id,
            "session_id": identity.session_id,
            "device_id": fingerprint.device_id,
            "inode": fingerprint.inode,
            "offset_bytes": next_offset,
            "file_mtime_ms": fingerprint.mtime_ms,
            "file_size_bytes": size_bytes,
            "updated_at": format_datetime_utc(self._now()),
        }
        # The aggregates and the cursor that covers them land in one transaction.
        async with self._write_transaction() as (cursor_repo, aggregate_repo):
            if delta is not None and delta.lines:
                await self._apply_delta(identity, delta, metadata_cache, stats, aggregate_repo)
            await cursor_repo.upsert(new_cursor)

        if next_offset > offset:
            stats["filesUpdated"] += 1
        if delta is not None and delta.lines:
            sessions_updated.add(identity.session_id)
        return new_cursor

    def _parse_lines(self, agent_id: str, lines: list[str], stats: dict[str, Any]) -> FileUsageDelta:
        delta = FileUsageDelta()
        skipped = 0
        now = self._now()
        for line in lines:
            if not line.strip():
                continue
            try:
                parsed = parse_usage_line(line, now=now)
            except Exception as exc:
                logger.warning("Skipping unparseable usage line for agent %s: %s", agent_id, exc)
                parsed = None
            if parsed is None:
                skipped += 1
                continue
            delta.add_line(agent_id, parsed)
        stats["linesParsed"] += delta.lines
        stats["linesSkipped"] += skipped
        if skipped:
            record_skipped_lines(agent_id, skipped)
        return delta

    async def _session_metadata(self, session_id: str, metadata_cache: dict[str, dict | None]) -> dict | None:
        if session_id not in metadata_cache:
            metadata_cache[session_id] = await self.session_meta_repo.get_session_metadata(session_id)
        return metadata_cache[session_id]

    async def _apply_delta(
        self,
        identity: SessionFileIdentity,
        delta: FileUsageDelta,
        metadata_cache: dict[str, dict | None],
        stats: dict[str, Any],
        aggregate_repo: AggregateStore,
    ) -> None:
        meta = await self._session_metadata(identity.session_id, metadata_cache) or {}
        session_class = derive_session_class(
            meta.get("source"),
            meta.get("channel"),
            meta.get("session_key"),
            meta.get("session_kind"),
            meta.get("operation_id"),
            meta.get("work_order_id"),
        )
        await aggregate_repo.upsert_session_totals(
            identity.session_id,
            SessionUsageDelta(
                agent_id=identity.agent_id,
                counters=delta.session,
                model=delta.model,
                session_key=meta.get("session_key"),
                source=meta.get("source"),
                channel=meta.get("channel"),
                session_kind=meta.get("session_kind"),
                session_class=session_class,
                provider_key=derive_provider_key(delta.model),
                operation_id=meta.get("operation_id"),
                work_order_id=meta.get("work_order_id"),
                has_errors=delta.has_errors,
                first_seen_at=delta.first_seen_at,
                last_seen_at=delta.last_seen_at,
            ),
        )

        for (granularity, bucket_start, model_key), bucket in sorted(delta.buckets.items()):
            await aggregate_repo.upsert_bucket_aggregate(
                granularity,
                identity.session_id,
                bucket_start,
                model_key,
                bucket,
            )

        for (day_start, tool_name), count in sorted(delta.tool_days.items()):
            await aggregate_repo.upsert_tool_count(identity.session_id, tool_name, count, day_start=day_start)
            stats["toolsUpserted"] += 1
        for tool_name, count in sorted(delta.tool_totals.items()):
            await aggregate_repo.upsert_tool_count(identity.session_id, tool_name, count)
            stats["toolsUpserted"] += 1

        record_token_cost(
            model=delta.model or "unknown",
            token_input=delta.session.input_tokens,
            token_output=delta.session.output_tokens,
            cost_micros=delta.session.total_cost_micros,
        )
