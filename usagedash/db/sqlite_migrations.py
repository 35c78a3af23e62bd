"""Database schema creation and versioning.

All CREATE TABLE statements for the usage telemetry store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("usagedash.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Ingestion cursors (one per session log file) ────────────────
CREATE TABLE IF NOT EXISTS usage_ingestion_cursors (
    source_path      TEXT PRIMARY KEY,
    agent_id         TEXT NOT NULL,
    session_id       TEXT NOT NULL,
    device_id        TEXT NOT NULL,
    inode            TEXT NOT NULL,
    offset_bytes     INTEGER NOT NULL DEFAULT 0,
    file_mtime_ms    INTEGER NOT NULL DEFAULT 0,
    file_size_bytes  INTEGER NOT NULL DEFAULT 0,
    updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_cursors_session ON usage_ingestion_cursors(session_id);
CREATE INDEX IF NOT EXISTS idx_usage_cursors_updated ON usage_ingestion_cursors(updated_at);

-- ── 2. Per-session totals ──────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_usage_aggregates (
    session_id          TEXT PRIMARY KEY,
    agent_id            TEXT NOT NULL,
    model               TEXT,
    session_key         TEXT,
    source              TEXT,
    channel             TEXT,
    session_kind        TEXT,
    session_class       TEXT NOT NULL DEFAULT 'unknown',
    provider_key        TEXT NOT NULL DEFAULT 'unknown',
    operation_id        TEXT,
    work_order_id       TEXT,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    total_cost_micros   INTEGER NOT NULL DEFAULT 0,
    has_errors          INTEGER NOT NULL DEFAULT 0,
    first_seen_at       TEXT,
    last_seen_at        TEXT,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_sessions_agent ON session_usage_aggregates(agent_id);
CREATE INDEX IF NOT EXISTS idx_usage_sessions_last_seen ON session_usage_aggregates(last_seen_at DESC);

-- ── 3. Time-bucketed totals ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_usage_daily_aggregates (
    session_id          TEXT NOT NULL,
    day_start           TEXT NOT NULL,
    model_key           TEXT NOT NULL,
    agent_id            TEXT NOT NULL,
    model               TEXT,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    total_cost_micros   INTEGER NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (session_id, day_start, model_key)
);

CREATE INDEX IF NOT EXISTS idx_usage_daily_day ON session_usage_daily_aggregates(day_start);

CREATE TABLE IF NOT EXISTS session_usage_hourly_aggregates (
    session_id          TEXT NOT NULL,
    hour_start          TEXT NOT NULL,
    model_key           TEXT NOT NULL,
    agent_id            TEXT NOT NULL,
    model               TEXT,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    total_tokens        INTEGER NOT NULL DEFAULT 0,
    total_cost_micros   INTEGER NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (session_id, hour_start, model_key)
);

CREATE INDEX IF NOT EXISTS idx_usage_hourly_hour ON session_usage_hourly_aggregates(hour_start);

-- ── 4. Tool call counts ────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_tool_usage_daily_aggregates (
    session_id   TEXT NOT NULL,
    day_start    TEXT NOT NULL,
    tool_name    TEXT NOT NULL,
    call_count   INTEGER NOT NULL DEFAULT 0,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (session_id, day_start, tool_name)
);

CREATE INDEX IF NOT EXISTS idx_tool_daily_day ON session_tool_usage_daily_aggregates(day_start);

CREATE TABLE IF NOT EXISTS session_tool_usage (
    session_id   TEXT NOT NULL,
    tool_name    TEXT NOT NULL,
    call_count   INTEGER NOT NULL DEFAULT 0,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (session_id, tool_name)
);

-- ── 5. Session metadata (written by the gateway, read here) ────────
CREATE TABLE IF NOT EXISTS agent_sessions (
    session_id     TEXT PRIMARY KEY,
    session_key    TEXT,
    kind           TEXT,
    source         TEXT,
    channel        TEXT,
    operation_id   TEXT,
    work_order_id  TEXT,
    raw_json       TEXT DEFAULT '{}',
    updated_at     TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.Error:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Columns added after the first usage schema shipped.
    await _ensure_column(db, "session_usage_aggregates", "session_class", "TEXT NOT NULL DEFAULT 'unknown'")
    await _ensure_column(db, "session_usage_aggregates", "provider_key", "TEXT NOT NULL DEFAULT 'unknown'")
    await _ensure_column(db, "session_usage_aggregates", "operation_id", "TEXT")
    await _ensure_column(db, "session_usage_aggregates", "work_order_id", "TEXT")
    await _ensure_column(db, "agent_sessions", "operation_id", "TEXT")
    await _ensure_column(db, "agent_sessions", "work_order_id", "TEXT")
    await _ensure_index(
        db,
        "CREATE INDEX IF NOT EXISTS idx_usage_sessions_class ON session_usage_aggregates(session_class, provider_key)",
    )

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete (schema version {SCHEMA_VERSION})")
