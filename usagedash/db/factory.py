"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from usagedash.db.repositories.agent_sessions import SqliteAgentSessionRepository
from usagedash.db.repositories.usage_aggregates import SqliteUsageAggregateRepository
from usagedash.db.repositories.usage_cursors import SqliteUsageCursorRepository


def get_usage_cursor_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteUsageCursorRepository(db)
    from usagedash.db.repositories.postgres.usage_cursors import PostgresUsageCursorRepository
    return PostgresUsageCursorRepository(db)


def get_usage_aggregate_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteUsageAggregateRepository(db)
    from usagedash.db.repositories.postgres.usage_aggregates import PostgresUsageAggregateRepository
    return PostgresUsageAggregateRepository(db)


def get_agent_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteAgentSessionRepository(db)
    from usagedash.db.repositories.postgres.agent_sessions import PostgresAgentSessionRepository
    return PostgresAgentSessionRepository(db)
