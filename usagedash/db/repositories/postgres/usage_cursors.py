"""PostgreSQL implementation of the ingestion cursor store."""
from __future__ import annotations

from datetime import datetime, timezone

import asyncpg

from usagedash.date_utils import format_datetime_utc
from usagedash.db.repositories.base import chunk_values

_COLUMNS = """source_path, agent_id, session_id, device_id, inode, offset_bytes,
    file_mtime_ms, file_size_bytes, updated_at"""


class PostgresUsageCursorRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_many(self, source_paths: list[str]) -> dict[str, dict]:
        results: dict[str, dict] = {}
        for chunk in chunk_values(dict.fromkeys(source_paths)):
            rows = await self.db.fetch(
                f"SELECT {_COLUMNS} FROM usage_ingestion_cursors WHERE source_path = ANY($1::text[])",
                chunk,
            )
            for row in rows:
                results[row["source_path"]] = dict(row)
        return results

    async def upsert(self, cursor: dict) -> None:
        updated_at = cursor.get("updated_at") or format_datetime_utc(datetime.now(timezone.utc))
        await self.db.execute(
            """INSERT INTO usage_ingestion_cursors (
                source_path, agent_id, session_id, device_id, inode, offset_bytes,
                file_mtime_ms, file_size_bytes, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT(source_path) DO UPDATE SET
                agent_id=EXCLUDED.agent_id,
                session_id=EXCLUDED.session_id,
                device_id=EXCLUDED.device_id,
                inode=EXCLUDED.inode,
                offset_bytes=EXCLUDED.offset_bytes,
                file_mtime_ms=EXCLUDED.file_mtime_ms,
                file_size_bytes=EXCLUDED.file_size_bytes,
                updated_at=EXCLUDED.updated_at
            """,
            cursor["source_path"],
            cursor["agent_id"],
            cursor["session_id"],
            str(cursor["device_id"]),
            str(cursor["inode"]),
            int(cursor.get("offset_bytes", 0)),
            int(cursor.get("file_mtime_ms", 0)),
            int(cursor.get("file_size_bytes", 0)),
            updated_at,
        )

    async def delete_all(self) -> int:
        status = await self.db.execute("DELETE FROM usage_ingestion_cursors")
        # asyncpg returns the command tag, e.g. "DELETE 12".
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except ValueError:
            return 0
