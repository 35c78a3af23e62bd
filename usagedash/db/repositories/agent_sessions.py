"""SQLite access to the gateway-owned per-session metadata table."""
from __future__ import annotations

import json
import logging

import aiosqlite

logger = logging.getLogger("usagedash.db")


def metadata_from_row(row: dict) -> dict:
    raw: dict = {}
    raw_json = row.get("raw_json")
    if raw_json:
        try:
            decoded = json.loads(raw_json)
        except (TypeError, ValueError):
            logger.debug("Ignoring unreadable raw_json for session %s", row.get("session_id"))
        else:
            if isinstance(decoded, dict):
                raw = decoded
    return {
        "session_id": row.get("session_id"),
        "session_key": row.get("session_key") or raw.get("sessionKey"),
        "session_kind": row.get("kind") or raw.get("kind"),
        "source": row.get("source") or raw.get("source"),
        "channel": row.get("channel") or raw.get("channel") or raw.get("lastChannel"),
        "operation_id": row.get("operation_id") or raw.get("operationId"),
        "work_order_id": row.get("work_order_id") or raw.get("workOrderId"),
    }


class SqliteAgentSessionRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_session_metadata(self, session_id: str) -> dict | None:
        async with self.db.execute(
            """SELECT session_id, session_key, kind, source, channel,
                      operation_id, work_order_id, raw_json
               FROM agent_sessions WHERE session_id = ?""",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return metadata_from_row(dict(row)) if row else None
