"""PostgreSQL access to the gateway-owned per-session metadata table."""
from __future__ import annotations

import asyncpg

from usagedash.db.repositories.agent_sessions import metadata_from_row


class PostgresAgentSessionRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_session_metadata(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow(
            """SELECT session_id, session_key, kind, source, channel,
                      operation_id, work_order_id, raw_json
               FROM agent_sessions WHERE session_id = $1""",
            session_id,
        )
        return metadata_from_row(dict(row)) if row else None
