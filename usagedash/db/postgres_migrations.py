"""PostgreSQL schema for the usage telemetry store."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("usagedash.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS usage_ingestion_cursors (
    source_path      TEXT PRIMARY KEY,
    agent_id         TEXT NOT NULL,
    session_id       TEXT NOT NULL,
    device_id        TEXT NOT NULL,
    inode            TEXT NOT NULL,
    offset_bytes     BIGINT NOT NULL DEFAULT 0,
    file_mtime_ms    BIGINT NOT NULL DEFAULT 0,
    file_size_bytes  BIGINT NOT NULL DEFAULT 0,
    updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_cursors_session ON usage_ingestion_cursors(session_id);
CREATE INDEX IF NOT EXISTS idx_usage_cursors_updated ON usage_ingestion_cursors(updated_at);

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
    input_tokens        BIGINT NOT NULL DEFAULT 0,
    output_tokens       BIGINT NOT NULL DEFAULT 0,
    cache_read_tokens   BIGINT NOT NULL DEFAULT 0,
    cache_write_tokens  BIGINT NOT NULL DEFAULT 0,
    total_tokens        BIGINT NOT NULL DEFAULT 0,
    total_cost_micros   BIGINT NOT NULL DEFAULT 0,
    has_errors          BOOLEAN NOT NULL DEFAULT FALSE,
    first_seen_at       TEXT,
    last_seen_at        TEXT,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_sessions_agent ON session_usage_aggregates(agent_id);
CREATE INDEX IF NOT EXISTS idx_usage_sessions_last_seen ON session_usage_aggregates(last_seen_at DESC);
CREATE INDEX IF NOT EXISTS idx_usage_sessions_class ON session_usage_aggregates(session_class, provider_key);

CREATE TABLE IF NOT EXISTS session_usage_daily_aggregates (
    session_id          TEXT NOT NULL,
    day_start           TEXT NOT NULL,
    model_key           TEXT NOT NULL,
    agent_id            TEXT NOT NULL,
    model               TEXT,
    input_tokens        BIGINT NOT NULL DEFAULT 0,
    output_tokens       BIGINT NOT NULL DEFAULT 0,
    cache_read_tokens   BIGINT NOT NULL DEFAULT 0,
    cache_write_tokens  BIGINT NOT NULL DEFAULT 0,
    total_tokens        BIGINT NOT NULL DEFAULT 0,
    total_cost_micros   BIGINT NOT NULL DEFAULT 0,
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
    input_tokens        BIGINT NOT NULL DEFAULT 0,
    output_tokens       BIGINT NOT NULL DEFAULT 0,
    cache_read_tokens   BIGINT NOT NULL DEFAULT 0,
    cache_write_tokens  BIGINT NOT NULL DEFAULT 0,
    total_tokens        BIGINT NOT NULL DEFAULT 0,
    total_cost_micros   BIGINT NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (session_id, hour_start, model_key)
);

CREATE INDEX IF NOT EXISTS idx_usage_hourly_hour ON session_usage_hourly_aggregates(hour_start);

CREATE TABLE IF NOT EXISTS session_tool_usage_daily_aggregates (
    session_id   TEXT NOT NULL,
    day_start    TEXT NOT NULL,
    tool_name    TEXT NOT NULL,
    call_count   BIGINT NOT NULL DEFAULT 0,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (session_id, day_start, tool_name)
);

CREATE INDEX IF NOT EXISTS idx_tool_daily_day ON session_tool_usage_daily_aggregates(day_start);

CREATE TABLE IF NOT EXISTS session_tool_usage (
    session_id   TEXT NOT NULL,
    tool_name    TEXT NOT NULL,
    call_count   BIGINT NOT NULL DEFAULT 0,
    updated_at   TEXT NOT NULL,
    PRIMARY KEY (session_id, tool_name)
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    session_id     TEXT PRIMARY KEY,
    session_key    TEXT,
    kind           TEXT,
    source         TEXT,
    channel        TEXT,
    operation_id   TEXT,
    work_order_id  TEXT,
    raw_json       TEXT DEFAULT '{}',
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running Postgres migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute(
                "ALTER TABLE session_usage_aggregates ADD COLUMN IF NOT EXISTS operation_id TEXT"
            )
            await conn.execute(
                "ALTER TABLE session_usage_aggregates ADD COLUMN IF NOT EXISTS work_order_id TEXT"
            )
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Postgres migrations complete (schema version {SCHEMA_VERSION})")
