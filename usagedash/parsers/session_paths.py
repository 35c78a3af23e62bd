"""Session log path conventions: `<home>/agents/<agentId>/sessions/<sessionId>.jsonl`."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("usagedash.sync")

SESSION_FILE_SUFFIXES = (".jsonl", ".ndjson")
SESSIONS_DIR_NAME = "sessions"
AGENTS_DIR_NAME = "agents"


@dataclass(frozen=True)
class SessionFileIdentity:
    source_path: str
    agent_id: str
    session_id: str


def parse_session_identity(source_path: str | os.PathLike[str]) -> SessionFileIdentity | None:
    """Map a session log path to its agent/session ids, or None if it is not one."""
    raw = os.fspath(source_path)
    if not raw:
        return None
    path = Path(raw)
    if path.suffix not in SESSION_FILE_SUFFIXES:
        return None
    session_id = path.stem
    sessions_dir = path.parent
    agent_id = sessions_dir.parent.name
    if not session_id or not agent_id or sessions_dir.name != SESSIONS_DIR_NAME:
        return None
    return SessionFileIdentity(source_path=raw, agent_id=agent_id, session_id=session_id)


def list_session_files(home: str | os.PathLike[str]) -> list[str]:
    """All session log files under `home`, sorted by path. Missing dirs yield []."""
    agents_root = Path(home) / AGENTS_DIR_NAME
    if not agents_root.is_dir():
        return []

    files: list[str] = []
    try:
        agent_dirs = sorted(agents_root.iterdir())
    except OSError as exc:
        logger.warning("Unable to list agents directory %s: %s", agents_root, exc)
        return []

    for agent_dir in agent_dirs:
        sessions_dir = agent_dir / SESSIONS_DIR_NAME
        if not sessions_dir.is_dir():
            continue
        try:
            entries = list(sessions_dir.iterdir())
        except OSError as exc:
            logger.warning("Unable to list sessions directory %s: %s", sessions_dir, exc)
            continue
        for entry in entries:
            if entry.suffix in SESSION_FILE_SUFFIXES and entry.is_file():
                files.append(str(entry))

    files.sort()
    return files
