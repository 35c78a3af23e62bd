"""Storage contracts shared by the SQLite and Postgres usage repositories."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, TypeVar

# SQLite caps bound parameters at 999 on older builds; stay under it.
IN_CLAUSE_CHUNK_SIZE = 900

COUNTER_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "total_tokens",
    "total_cost_micros",
)

GRANULARITIES = ("daily", "hourly")

T = TypeVar("T")


def chunk_values(values: Iterable[T], size: int = IN_CLAUSE_CHUNK_SIZE) -> list[list[T]]:
    """Split `values` into lists of at most `size` items, preserving order."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    items = list(values)
    return [items[index:index + size] for index in range(0, len(items), size)]


@dataclass
class UsageCounters:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0
    total_cost_micros: int = 0

    def add(self, other: Any) -> None:
        """Increment from anything exposing the counter attributes."""
        for name in COUNTER_FIELDS:
            setattr(self, name, getattr(self, name) + int(getattr(other, name, 0) or 0))


@dataclass
class SessionUsageDelta:
    """Increment for one session row, plus the descriptive fields to refresh."""

    agent_id: str
    counters: UsageCounters = field(default_factory=UsageCounters)
    model: str | None = None
    session_key: str | None = None
    source: str | None = None
    channel: str | None = None
    session_kind: str | None = None
    session_class: str = "unknown"
    provider_key: str = "unknown"
    operation_id: str | None = None
    work_order_id: str | None = None
    has_errors: bool = False
    first_seen_at: str | None = None
    last_seen_at: str | None = None


@dataclass
class BucketUsageDelta:
    agent_id: str
    model: str | None = None
    counters: UsageCounters = field(default_factory=UsageCounters)


class CursorStore(Protocol):
    async def get_many(self, source_paths: list[str]) -> dict[str, dict]: ...

    async def upsert(self, cursor: dict) -> None: ...

    async def delete_all(self) -> int: ...


class AggregateStore(Protocol):
    async def upsert_session_totals(self, session_id: str, delta: SessionUsageDelta) -> None: ...

    async def upsert_bucket_aggregate(
        self,
        granularity: str,
        session_id: str,
        bucket_start: str,
        model_key: str,
        delta: BucketUsageDelta,
    ) -> None: ...

    async def upsert_tool_count(
        self,
        session_id: str,
        tool_name: str,
        delta: int,
        day_start: str | None = None,
    ) -> None: ...

    async def list_bucket_rows(
        self,
        granularity: str,
        start: str,
        end: str,
        agent_id: str | None = None,
        model_key: str | None = None,
    ) -> list[dict]: ...

    async def get_sessions_by_ids(self, session_ids: list[str]) -> list[dict]: ...

    async def list_tool_daily_rows(
        self,
        session_ids: list[str],
        start_day: str,
        end_day: str,
        tool_name: str | None = None,
    ) -> list[dict]: ...

    async def reset_all(self) -> None: ...


class SessionMetadataLookup(Protocol):
    async def get_session_metadata(self, session_id: str) -> dict | None: ...


def bucket_table(granularity: str) -> tuple[str, str]:
    """Table and bucket column for a granularity name."""
    if granularity == "daily":
        return "session_usage_daily_aggregates", "day_start"
    if granularity == "hourly":
        return "session_usage_hourly_aggregates", "hour_start"
    raise ValueError(f"Unsupported bucket granularity: {granularity}")
