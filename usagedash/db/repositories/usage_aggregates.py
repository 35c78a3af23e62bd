"""SQLite implementation of the usage aggregate store.

Every upsert is create-or-increment. Nothing here commits: the sync engine
commits once per file so a file's aggregates land together with its cursor.
"""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

from usagedash.date_utils import format_datetime_utc
from usagedash.db.repositories.base import (
    BucketUsageDelta,
    SessionUsageDelta,
    bucket_table,
    chunk_values,
)

_SESSION_COLUMNS = """session_id, agent_id, model, session_key, source, channel, session_kind,
    session_class, provider_key, operation_id, work_order_id,
    input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
    total_tokens, total_cost_micros, has_errors, first_seen_at, last_seen_at"""

_USAGE_TABLES = (
    "session_tool_usage_daily_aggregates",
    "session_tool_usage",
    "session_usage_hourly_aggregates",
    "session_usage_daily_aggregates",
    "session_usage_aggregates",
)


def _now() -> str:
    return format_datetime_utc(datetime.now(timezone.utc))


def _session_row(row: aiosqlite.Row) -> dict:
    data = dict(row)
    data["has_errors"] = bool(data.get("has_errors"))
    return data


class SqliteUsageAggregateRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_session_totals(self, session_id: str, delta: SessionUsageDelta) -> None:
        c = delta.counters
        await self.db.execute(
            """INSERT INTO session_usage_aggregates (
                session_id, agent_id, model, session_key, source, channel, session_kind,
                session_class, provider_key, operation_id, work_order_id,
                input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                total_tokens, total_cost_micros, has_errors, first_seen_at, last_seen_at,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                agent_id=excluded.agent_id,
                model=COALESCE(excluded.model, model),
                session_key=COALESCE(excluded.session_key, session_key),
                source=COALESCE(excluded.source, source),
                channel=COALESCE(excluded.channel, channel),
                session_kind=COALESCE(excluded.session_kind, session_kind),
                session_class=CASE WHEN excluded.session_class = 'unknown'
                    THEN session_class ELSE excluded.session_class END,
                provider_key=CASE WHEN excluded.provider_key = 'unknown'
                    THEN provider_key ELSE excluded.provider_key END,
                operation_id=COALESCE(excluded.operation_id, operation_id),
                work_order_id=COALESCE(excluded.work_order_id, work_order_id),
                input_tokens=input_tokens + excluded.input_tokens,
                output_tokens=output_tokens + excluded.output_tokens,
                cache_read_tokens=cache_read_tokens + excluded.cache_read_tokens,
                cache_write_tokens=cache_write_tokens + excluded.cache_write_tokens,
                total_tokens=total_tokens + excluded.total_tokens,
                total_cost_micros=total_cost_micros + excluded.total_cost_micros,
                has_errors=MAX(has_errors, excluded.has_errors),
                first_seen_at=COALESCE(MIN(first_seen_at, excluded.first_seen_at), first_seen_at, excluded.first_seen_at),
                last_seen_at=COALESCE(MAX(last_seen_at, excluded.last_seen_at), last_seen_at, excluded.last_seen_at),
                updated_at=excluded.updated_at
            """,
            (
                session_id,
                delta.agent_id,
                delta.model,
                delta.session_key,
                delta.source,
                delta.channel,
                delta.session_kind,
                delta.session_class,
                delta.provider_key,
                delta.operation_id,
                delta.work_order_id,
                c.input_tokens,
                c.output_tokens,
                c.cache_read_tokens,
                c.cache_write_tokens,
                c.total_tokens,
                c.total_cost_micros,
                1 if delta.has_errors else 0,
                delta.first_seen_at,
                delta.last_seen_at,
                _now(),
            ),
        )

    async def upsert_bucket_aggregate(
        self,
        granularity: str,
        session_id: str,
        bucket_start: str,
        model_key: str,
        delta: BucketUsageDelta,
    ) -> None:
        table, column = bucket_table(granularity)
        c = delta.counters
        await self.db.execute(
            f"""INSERT INTO {table} (
                session_id, {column}, model_key, agent_id, model,
                input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                total_tokens, total_cost_micros, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, {column}, model_key) DO UPDATE SET
                agent_id=excluded.agent_id,
                model=COALESCE(excluded.model, model),
                input_tokens=input_tokens + excluded.input_tokens,
                output_tokens=output_tokens + excluded.output_tokens,
                cache_read_tokens=cache_read_tokens + excluded.cache_read_tokens,
                cache_write_tokens=cache_write_tokens + excluded.cache_write_tokens,
                total_tokens=total_tokens + excluded.total_tokens,
                total_cost_micros=total_cost_micros + excluded.total_cost_micros,
                updated_at=excluded.updated_at
            """,
            (
                session_id,
                bucket_start,
                model_key,
                delta.agent_id,
                delta.model,
                c.input_tokens,
                c.output_tokens,
                c.cache_read_tokens,
                c.cache_write_tokens,
                c.total_tokens,
                c.total_cost_micros,
                _now(),
            ),
        )

    async def upsert_tool_count(
        self,
        session_id: str,
        tool_name: str,
        delta: int,
        day_start: str | None = None,
    ) -> None:
        if day_start is None:
            await self.db.execute(
                """INSERT INTO session_tool_usage (session_id, tool_name, call_count, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id, tool_name) DO UPDATE SET
                    call_count=call_count + excluded.call_count,
                    updated_at=excluded.updated_at
                """,
                (session_id, tool_name, int(delta), _now()),
            )
            return
        await self.db.execute(
            """INSERT INTO session_tool_usage_daily_aggregates (
                session_id, day_start, tool_name, call_count, updated_at
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id, day_start, tool_name) DO UPDATE SET
                call_count=call_count + excluded.call_count,
                updated_at=excluded.updated_at
            """,
            (session_id, day_start, tool_name, int(delta), _now()),
        )

    async def list_bucket_rows(
        self,
        granularity: str,
        start: str,
        end: str,
        agent_id: str | None = None,
        model_key: str | None = None,
    ) -> list[dict]:
        """Bucket rows with `start <= bucket < end`."""
        table, column = bucket_table(granularity)
        clauses = [f"{column} >= ?", f"{column} < ?"]
        params: list = [start, end]
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if model_key:
            clauses.append("model_key = ?")
            params.append(model_key)
        async with self.db.execute(
            f"""SELECT session_id, {column} AS bucket_start, model_key, agent_id, model,
                    input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                    total_tokens, total_cost_micros
                FROM {table}
                WHERE {' AND '.join(clauses)}
                ORDER BY {column}, session_id, model_key""",
            tuple(params),
        ) as cur:
            return [dict(row) for row in await cur.fetchall()]

    async def get_sessions_by_ids(self, session_ids: list[str]) -> list[dict]:
        results: list[dict] = []
        for chunk in chunk_values(dict.fromkeys(session_ids)):
            placeholders = ",".join("?" for _ in chunk)
            async with self.db.execute(
                f"SELECT {_SESSION_COLUMNS} FROM session_usage_aggregates WHERE session_id IN ({placeholders})",
                tuple(chunk),
            ) as cur:
                results.extend(_session_row(row) for row in await cur.fetchall())
        return results

    async def list_tool_daily_rows(
        self,
        session_ids: list[str],
        start_day: str,
        end_day: str,
        tool_name: str | None = None,
    ) -> list[dict]:
        """Tool rows for the given sessions with `start_day <= day_start < end_day`."""
        results: list[dict] = []
        for chunk in chunk_values(dict.fromkeys(session_ids)):
            placeholders = ",".join("?" for _ in chunk)
            query = f"""SELECT session_id, day_start, tool_name, call_count
                FROM session_tool_usage_daily_aggregates
                WHERE session_id IN ({placeholders}) AND day_start >= ? AND day_start < ?"""
            params: list = [*chunk, start_day, end_day]
            if tool_name:
                query += " AND tool_name = ?"
                params.append(tool_name)
            query += " ORDER BY session_id, day_start, tool_name"
            async with self.db.execute(query, tuple(params)) as cur:
                results.extend(dict(row) for row in await cur.fetchall())
        return results

    async def reset_all(self) -> None:
        for table in _USAGE_TABLES:
            await self.db.execute(f"DELETE FROM {table}")
