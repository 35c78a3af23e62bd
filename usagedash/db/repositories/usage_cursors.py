"""SQLite implementation of the ingestion cursor store."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

from usagedash.date_utils import format_datetime_utc
from usagedash.db.repositories.base import chunk_values

_COLUMNS = """source_path, agent_id, session_id, device_id, inode, offset_bytes,
    file_mtime_ms, file_size_bytes, updated_at"""


class SqliteUsageCursorRepository:
    """One row per session log file; writes are left for the caller to commit."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_many(self, source_paths: list[str]) -> dict[str, dict]:
        results: dict[str, dict] = {}
        for chunk in chunk_values(dict.fromkeys(source_paths)):
            placeholders = ",".join("?" for _ in chunk)
            async with self.db.execute(
                f"SELECT {_COLUMNS} FROM usage_ingestion_cursors WHERE source_path IN ({placeholders})",
                tuple(chunk),
            ) as cur:
                for row in await cur.fetchall():
                    results[row["source_path"]] = dict(row)
        return results

    async def upsert(self, cursor: dict) -> None:
        updated_at = cursor.get("updated_at") or format_datetime_utc(datetime.now(timezone.utc))
        await self.db.execute(
            """INSERT INTO usage_ingestion_cursors (
                source_path, agent_id, session_id, device_id, inode, offset_bytes,
                file_mtime_ms, file_size_bytes, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_path) DO UPDATE SET
                agent_id=excluded.agent_id,
                session_id=excluded.session_id,
                device_id=excluded.device_id,
                inode=excluded.inode,
                offset_bytes=excluded.offset_bytes,
                file_mtime_ms=excluded.file_mtime_ms,
                file_size_bytes=excluded.file_size_bytes,
                updated_at=excluded.updated_at
            """,
            (
                cursor["source_path"],
                cursor["agent_id"],
                cursor["session_id"],
                str(cursor["device_id"]),
                str(cursor["inode"]),
                int(cursor.get("offset_bytes", 0)),
                int(cursor.get("file_mtime_ms", 0)),
                int(cursor.get("file_size_bytes", 0)),
                updated_at,
            ),
        )

    async def delete_all(self) -> int:
        async with self.db.execute("DELETE FROM usage_ingestion_cursors") as cur:
            return cur.rowcount or 0
