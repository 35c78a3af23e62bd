"""Order session log files for one bounded ingestion pass."""
from __future__ import annotations

from typing import Iterable, Mapping


def build_sync_file_queue(
    files: Iterable[str],
    cursors: Mapping[str, Mapping],
    priority_paths: Iterable[str] | None = None,
    file_mtime_ms_by_path: Mapping[str, int | float] | None = None,
) -> list[str]:
    """Return every file in visiting order.

    1. `priority_paths` that still exist, de-duplicated, in caller order.
    2. Files without a cursor, newest mtime first.
    3. Files with a cursor, least recently synced (`updated_at`) first.

    Paths break ties so the result is a pure function of the inputs. Taking
    the first `max_files` entries per pass and re-running covers N files in
    ceil(N / max_files) passes, because a visited file's `updated_at` moves
    it behind every file that was not visited.
    """
    known = list(dict.fromkeys(files))
    known_set = set(known)
    mtimes = file_mtime_ms_by_path or {}

    queue: list[str] = []
    queued: set[str] = set()
    for path in priority_paths or ():
        if path in known_set and path not in queued:
            queue.append(path)
            queued.add(path)

    unseen: list[str] = []
    seen: list[str] = []
    for path in known:
        if path in queued:
            continue
        if path in cursors:
            seen.append(path)
        else:
            unseen.append(path)

    unseen.sort(key=lambda path: (-float(mtimes.get(path, 0) or 0), path))
    seen.sort(key=lambda path: (str(cursors[path].get("updated_at") or ""), path))

    queue.extend(unseen)
    queue.extend(seen)
    return queue
