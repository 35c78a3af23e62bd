#!/usr/bin/env python3
"""Ingest session logs into the usage aggregates until every file is covered.

Usage:
  python -m usagedash.scripts.usage_backfill
  python -m usagedash.scripts.usage_backfill --force
  python -m usagedash.scripts.usage_backfill --home /srv/openclaw --max-files 1000
"""
from __future__ import annotations

import argparse
import asyncio
import logging

from usagedash.async_cache import AsyncResultCache
from usagedash.db import connection, migrations, sync_engine


async def _run(home: str | None, force: bool, max_files: int | None, max_ms: int | None, max_passes: int) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    engine = sync_engine.UsageSyncEngine(db, cache=AsyncResultCache(), home=home)
    print(f"Backfilling usage from {engine.home}")

    exit_code = 0
    for index in range(max_passes):
        stats = await engine.run_sync(
            max_ms=max_ms,
            max_files=max_files,
            force=force and index == 0,
            trigger="backfill",
        )
        if not stats.get("lockAcquired"):
            print("Ingestion lease busy; aborting.")
            exit_code = 1
            break
        print(
            f"pass {index + 1}: scanned={stats['filesScanned']} updated={stats['filesUpdated']} "
            f"lines={stats['linesParsed']} skipped={stats['linesSkipped']} "
            f"remaining={stats['filesRemaining']}/{stats['filesTotal']} "
            f"coverage={stats['coveragePct']}%"
        )
        if stats["filesRemaining"] == 0:
            break
    else:
        print(f"Stopped after {max_passes} passes with files still remaining.")
        exit_code = 1

    await connection.close_connection()
    return exit_code


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--home", default="", help="Agent runtime home (default: $OPENCLAW_HOME or ~/.openclaw)")
    parser.add_argument("--force", action="store_true", help="Drop cursors and aggregates before the first pass")
    parser.add_argument("--max-files", type=int, default=None, help="Files per pass")
    parser.add_argument("--max-ms", type=int, default=None, help="Wall-clock budget per pass")
    parser.add_argument("--max-passes", type=int, default=1000, help="Stop after this many passes")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(args.home or None, args.force, args.max_files, args.max_ms, max(1, args.max_passes)))


if __name__ == "__main__":
    raise SystemExit(main())
