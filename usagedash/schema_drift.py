"""Recognize storage errors caused by a missing or partially migrated usage schema."""
from __future__ import annotations

import re

_DRIFT_PATTERN = re.compile(
    r"no such table|no such column|does not exist|undefined (?:table|column)|schema",
    re.IGNORECASE,
)

USAGE_SCHEMA_MARKERS = (
    "usage_ingestion_cursors",
    "session_usage_aggregates",
    "session_usage_daily_aggregates",
    "session_usage_hourly_aggregates",
    "session_tool_usage_daily_aggregates",
    "session_tool_usage",
    "agent_sessions",
    "session_class",
    "provider_key",
    "total_cost_micros",
)

DRIFT_CODE = "USAGE_SCHEMA_DRIFT"
DRIFT_WARNING = (
    "Usage telemetry tables are missing or out of date. "
    "Restart the backend to apply migrations, then run a usage sync."
)


def _error_text(exc: BaseException) -> str:
    parts = [type(exc).__name__, str(exc)]
    # asyncpg attaches the SQLSTATE; 42P01/42703 are undefined table/column.
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate in {"42P01", "42703"}:
        parts.append("undefined table")
    return " ".join(parts)


def is_usage_schema_drift(exc: BaseException | None) -> bool:
    if exc is None:
        return False
    text = _error_text(exc)
    if not _DRIFT_PATTERN.search(text):
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in USAGE_SCHEMA_MARKERS)


def degraded_payload(empty: dict) -> dict:
    """Wrap a zero-filled result with the degraded flag and warning text."""
    return {
        **empty,
        "degraded": True,
        "warning": DRIFT_WARNING,
        "code": DRIFT_CODE,
    }
