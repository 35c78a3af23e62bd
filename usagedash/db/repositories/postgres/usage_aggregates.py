"""PostgreSQL implementation of the usage aggregate store."""
from __future__ import annotations

from datetime import datetime, timezone

import asyncpg

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


class PostgresUsageAggregateRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert_session_totals(self, session_id: str, delta: SessionUsageDelta) -> None:
        c = delta.counters
        await self.db.execute(
            """INSERT INTO session_usage_aggregates AS s (
                session_id, agent_id, model, session_key, source, channel, session_kind,
                session_class, provider_key, operation_id, work_order_id,
                input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                total_tokens, total_cost_micros, has_errors, first_seen_at, last_seen_at,
                updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20, $21)
            ON CONFLICT(session_id) DO UPDATE SET
                agent_id=EXCLUDED.agent_id,
                model=COALESCE(EXCLUDED.model, s.model),
                session_key=COALESCE(EXCLUDED.session_key, s.session_key),
                source=COALESCE(EXCLUDED.source, s.source),
                channel=COALESCE(EXCLUDED.channel, s.channel),
                session_kind=COALESCE(EXCLUDED.session_kind, s.session_kind),
                session_class=CASE WHEN EXCLUDED.session_class = 'unknown'
                    THEN s.session_class ELSE EXCLUDED.session_class END,
                provider_key=CASE WHEN EXCLUDED.provider_key = 'unknown'
                    THEN s.provider_key ELSE EXCLUDED.provider_key END,
                operation_id=COALESCE(EXCLUDED.operation_id, s.operation_id),
                work_order_id=COALESCE(EXCLUDED.work_order_id, s.work_order_id),
                input_tokens=s.input_tokens + EXCLUDED.input_tokens,
                output_tokens=s.output_tokens + EXCLUDED.output_tokens,
                cache_read_tokens=s.cache_read_tokens + EXCLUDED.cache_read_tokens,
                cache_write_tokens=s.cache_write_tokens + EXCLUDED.cache_write_tokens,
                total_tokens=s.total_tokens + EXCLUDED.total_tokens,
                total_cost_micros=s.total_cost_micros + EXCLUDED.total_cost_micros,
                has_errors=s.has_errors OR EXCLUDED.has_errors,
                first_seen_at=LEAST(s.first_seen_at, EXCLUDED.first_seen_at),
                last_seen_at=GREATEST(s.last_seen_at, EXCLUDED.last_seen_at),
                updated_at=EXCLUDED.updated_at
            """,
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
            bool(delta.has_errors),
            delta.first_seen_at,
            delta.last_seen_at,
            _now(),
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
            f"""INSERT INTO {table} AS b (
                session_id, {column}, model_key, agent_id, model,
                input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                total_tokens, total_cost_micros, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT(session_id, {column}, model_key) DO UPDATE SET
                agent_id=EXCLUDED.agent_id,
                model=COALESCE(EXCLUDED.model, b.model),
                input_tokens=b.input_tokens + EXCLUDED.input_tokens,
                output_tokens=b.output_tokens + EXCLUDED.output_tokens,
                cache_read_tokens=b.cache_read_tokens + EXCLUDED.cache_read_tokens,
                cache_write_tokens=b.cache_write_tokens + EXCLUDED.cache_write_tokens,
                total_tokens=b.total_tokens + EXCLUDED.total_tokens,
                total_cost_micros=b.total_cost_micros + EXCLUDED.total_cost_micros,
                updated_at=EXCLUDED.updated_at
            """,
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
                """INSERT INTO session_tool_usage AS t (session_id, tool_name, call_count, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT(session_id, tool_name) DO UPDATE SET
                    call_count=t.call_count + EXCLUDED.call_count,
                    updated_at=EXCLUDED.updated_at
                """,
                session_id,
                tool_name,
                int(delta),
                _now(),
            )
            return
        await self.db.execute(
            """INSERT INTO session_tool_usage_daily_aggregates AS t (
                session_id, day_start, tool_name, call_count, updated_at
            ) VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT(session_id, day_start, tool_name) DO UPDATE SET
                call_count=t.call_count + EXCLUDED.call_count,
                updated_at=EXCLUDED.updated_at
            """,
            session_id,
            day_start,
            tool_name,
            int(delta),
            _now(),
        )

    async def list_bucket_rows(
        self,
        granularity: str,
        start: str,
        end: str,
        agent_id: str | None = None,
        model_key: str | None = None,
    ) -> list[dict]:
        table, column = bucket_table(granularity)
        clauses = [f"{column} >= $1", f"{column} < $2"]
        params: list = [start, end]
        if agent_id:
            params.append(agent_id)
            clauses.append(f"agent_id = ${len(params)}")
        if model_key:
            params.append(model_key)
            clauses.append(f"model_key = ${len(params)}")
        rows = await self.db.fetch(
            f"""SELECT session_id, {column} AS bucket_start, model_key, agent_id, model,
                    input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
                    total_tokens, total_cost_micros
                FROM {table}
                WHERE {' AND '.join(clauses)}
                ORDER BY {column}, session_id, model_key""",
            *params,
        )
        return [dict(row) for row in rows]

    async def get_sessions_by_ids(self, session_ids: list[str]) -> list[dict]:
        results: list[dict] = []
        for chunk in chunk_values(dict.fromkeys(session_ids)):
            rows = await self.db.fetch(
                f"SELECT {_SESSION_COLUMNS} FROM session_usage_aggregates WHERE session_id = ANY($1::text[])",
                chunk,
            )
            results.extend(dict(row) for row in rows)
        return results

    async def list_tool_daily_rows(
        self,
        session_ids: list[str],
        start_day: str,
        end_day: str,
        tool_name: str | None = None,
    ) -> list[dict]:
        results: list[dict] = []
        for chunk in chunk_values(dict.fromkeys(session_ids)):
            query = """SELECT session_id, day_start, tool_name, call_count
                FROM session_tool_usage_daily_aggregates
                WHERE session_id = ANY($1::text[]) AND day_start >= $2 AND day_start < $3"""
            params: list = [chunk, start_day, end_day]
            if tool_name:
                query += " AND tool_name = $4"
                params.append(tool_name)
            query += " ORDER BY session_id, day_start, tool_name"
            rows = await self.db.fetch(query, *params)
            results.extend(dict(row) for row in rows)
        return results

    async def reset_all(self) -> None:
        for table in _USAGE_TABLES:
            await self.db.execute(f"DELETE FROM {table}")
