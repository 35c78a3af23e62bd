"""Read-side usage analytics: summary, breakdown, sessions, activity, options.

Every view is built from the same filtered row set (`_load_rows`) and every
total is a sum of stored row counters at query time, so the summary, each
breakdown dimension, the session listing, and the activity view reconcile
exactly for a given filter set.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from usagedash import config
from usagedash.async_cache import AsyncResultCache
from usagedash.date_utils import (
    bucket_start,
    format_datetime_utc,
    inclusive_day_count,
    iter_buckets,
    parse_datetime,
    resolve_range,
    start_of_utc_day,
)
from usagedash.db.factory import get_usage_aggregate_repository
from usagedash.db.repositories.base import COUNTER_FIELDS
from usagedash.observability import start_span
from usagedash.schema_drift import degraded_payload, is_usage_schema_drift
from usagedash.services.usage_parity import UsageParitySampler, empty_scope, normalize_session_limit

logger = logging.getLogger("usagedash.query")

RANGE_TYPES = ("daily", "weekly", "monthly")
BREAKDOWN_DIMENSIONS = ("agent", "model", "provider", "source", "sessionClass", "tool")
SESSION_SORTS = ("cost_desc", "tokens_desc", "recent_desc")
SCOPES = ("all", "parity")
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
WEEKDAY_LABELS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")

_CAMEL_COUNTERS = {
    "input_tokens": "inputTokens",
    "output_tokens": "outputTokens",
    "cache_read_tokens": "cacheReadTokens",
    "cache_write_tokens": "cacheWriteTokens",
    "total_tokens": "totalTokens",
    "total_cost_micros": "totalCostMicros",
}


class UsageQueryError(ValueError):
    """Raised for query parameters outside the accepted vocabulary."""


def _text(value: Any) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _label(value: Any) -> str | None:
    token = _text(value)
    return token.lower() if token else None


def _bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    token = _label(value)
    if token in {"true", "1", "yes"}:
        return True
    if token in {"false", "0", "no"}:
        return False
    return None


def _int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def normalize_timezone(value: Any) -> str:
    name = _text(value)
    if not name:
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"
    return name


def compute_cache_efficiency(cache_read_tokens: int, input_tokens: int) -> float:
    denominator = cache_read_tokens + input_tokens
    if denominator <= 0:
        return 0.0
    return (cache_read_tokens * 10_000 // denominator) / 100


def allocate_by_weight(value: int, weights: list[int]) -> list[int]:
    """Split `value` proportionally to `weights`; shares always sum to `value`.

    Integer division leaves a remainder, which goes to the heaviest weight
    (first one on ties).
    """
    if not weights:
        return []
    total_weight = sum(weights)
    if total_weight <= 0:
        return [0 for _ in weights]
    shares = [value * weight // total_weight for weight in weights]
    remainder = value - sum(shares)
    if remainder:
        max_index = max(range(len(weights)), key=lambda index: (weights[index], -index))
        shares[max_index] += remainder
    return shares


def _counters(row: Mapping[str, Any] | None = None) -> dict[str, int]:
    return {name: int((row or {}).get(name) or 0) for name in COUNTER_FIELDS}


def _add_counters(target: dict[str, int], row: Mapping[str, Any]) -> None:
    for name in COUNTER_FIELDS:
        target[name] += int(row.get(name) or 0)


def _camel(counters: Mapping[str, int]) -> dict[str, int]:
    return {_CAMEL_COUNTERS[name]: counters[name] for name in COUNTER_FIELDS}


def _model_label(model: Any, model_key: Any) -> str:
    return _text(model) or _text(model_key) or "unknown"


def _sort_groups(groups: list[dict]) -> list[dict]:
    return sorted(groups, key=lambda group: (-group["totalCostMicros"], group["key"]))


@dataclass(frozen=True)
class UsageFilters:
    start: datetime
    end: datetime
    timezone: str = "UTC"
    agent_id: str | None = None
    session_class: str | None = None
    source: str | None = None
    channel: str | None = None
    session_kind: str | None = None
    provider_key: str | None = None
    model_key: str | None = None
    tool_name: str | None = None
    has_errors: bool | None = None
    q: str | None = None
    scope: str = "all"
    session_limit: int | None = None
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = "cost_desc"

    @property
    def from_day(self) -> datetime:
        return start_of_utc_day(self.start)

    @property
    def to_day(self) -> datetime:
        return start_of_utc_day(self.end)

    @property
    def window(self) -> tuple[str, str]:
        """Half-open UTC window `[from_day, to_day + 1 day)` as bucket strings."""
        return (
            format_datetime_utc(self.from_day),
            format_datetime_utc(self.to_day + timedelta(days=1)),
        )

    def echo(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "sessionClass": self.session_class,
            "source": self.source,
            "channel": self.channel,
            "sessionKind": self.session_kind,
            "providerKey": self.provider_key,
            "modelKey": self.model_key,
            "toolName": self.tool_name,
            "hasErrors": self.has_errors,
            "q": self.q,
        }

    def cache_key(self, prefix: str, extra: str = "") -> str:
        parts = [
            prefix,
            format_datetime_utc(self.start),
            format_datetime_utc(self.end),
            self.timezone,
            self.agent_id or "all",
            self.session_class or "all",
            self.source or "all",
            self.channel or "all",
            self.session_kind or "all",
            self.provider_key or "all",
            self.model_key or "all",
            self.tool_name or "all",
            "all" if self.has_errors is None else str(self.has_errors).lower(),
            self.q or "",
            f"scope={self.scope}",
            f"limit={self.session_limit or 'default'}",
            f"page={self.page}",
            f"pageSize={self.page_size}",
            f"sort={self.sort}",
            extra,
        ]
        return ":".join(parts)

    def envelope(self) -> dict[str, Any]:
        return {
            "from": format_datetime_utc(self.start),
            "to": format_datetime_utc(self.end),
            "timezone": self.timezone,
            "scope": self.scope,
            "filters": self.echo(),
        }


def resolve_filters(params: Mapping[str, Any] | None = None, now: datetime | None = None) -> UsageFilters:
    """Normalize raw query parameters (camelCase keys) into `UsageFilters`."""
    params = params or {}
    start, end = resolve_range(params.get("from"), params.get("to"), config.DEFAULT_RANGE_DAYS, now=now)

    scope = _label(params.get("scope")) or "all"
    if scope not in SCOPES:
        raise UsageQueryError(f"Unsupported scope: {params.get('scope')}")

    sort = _label(params.get("sort")) or "cost_desc"
    if sort not in SESSION_SORTS:
        sort = "cost_desc"

    page = _int(params.get("page"))
    page_size = _int(params.get("pageSize"))

    return UsageFilters(
        start=start,
        end=end,
        timezone=normalize_timezone(params.get("timezone")),
        agent_id=_text(params.get("agentId")),
        session_class=_label(params.get("sessionClass")),
        source=_label(params.get("source")),
        channel=_label(params.get("channel")),
        session_kind=_label(params.get("sessionKind")),
        provider_key=_label(params.get("providerKey")),
        model_key=_label(params.get("modelKey")),
        tool_name=_label(params.get("toolName")),
        has_errors=_bool(params.get("hasErrors")),
        q=_text(params.get("q")),
        scope=scope,
        session_limit=_int(params.get("sessionLimit")),
        page=max(1, page) if page is not None else 1,
        page_size=max(1, min(MAX_PAGE_SIZE, page_size)) if page_size is not None else DEFAULT_PAGE_SIZE,
        sort=sort,
    )


def matches_session_filters(session: Mapping[str, Any], filters: UsageFilters) -> bool:
    if filters.agent_id and session.get("agent_id") != filters.agent_id:
        return False
    if filters.session_class and _label(session.get("session_class")) != filters.session_class:
        return False
    if filters.source and _label(session.get("source")) != filters.source:
        return False
    if filters.channel and _label(session.get("channel")) != filters.channel:
        return False
    if filters.session_kind and _label(session.get("session_kind")) != filters.session_kind:
        return False
    if filters.provider_key and _label(session.get("provider_key")) != filters.provider_key:
        return False
    if filters.has_errors is not None and bool(session.get("has_errors")) != filters.has_errors:
        return False
    return True


def matches_text_query(session: Mapping[str, Any], usage: Mapping[str, Any], query: str | None) -> bool:
    if not query:
        return True
    haystack = " ".join(
        str(value or "")
        for value in (
            session.get("session_id"),
            session.get("agent_id"),
            session.get("session_key"),
            session.get("source"),
            session.get("channel"),
            session.get("session_kind"),
            session.get("session_class"),
            session.get("provider_key"),
            session.get("operation_id"),
            session.get("work_order_id"),
            usage.get("model"),
            usage.get("model_key"),
        )
    ).lower()
    return query.lower() in haystack


@dataclass
class FilteredRows:
    rows: list[tuple[dict, dict]] = field(default_factory=list)
    parity: dict[str, Any] | None = None

    @property
    def session_ids(self) -> list[str]:
        return list(dict.fromkeys(usage["session_id"] for _, usage in self.rows))


class UsageQueryService:
    def __init__(self, db: Any, cache: AsyncResultCache, parity: UsageParitySampler | None = None):
        self.db = db
        self.cache = cache
        self.aggregate_repo = get_usage_aggregate_repository(db)
        self.parity = parity or UsageParitySampler(db, cache)

    # ── Shared plumbing ─────────────────────────────────────────────

    async def _load_rows(self, filters: UsageFilters, granularity: str) -> FilteredRows:
        """Bucket rows in the filter window joined to their session row and filtered."""
        start, end = filters.window
        usage_rows = await self.aggregate_repo.list_bucket_rows(
            granularity,
            start,
            end,
            agent_id=filters.agent_id,
            model_key=filters.model_key,
        )

        result = FilteredRows()
        if filters.scope == "parity":
            result.parity = await self.parity.resolve_scope(
                filters.start,
                filters.end,
                filters.session_limit,
            )
            sampled = set(result.parity["sessionIdsSampled"])
            usage_rows = [row for row in usage_rows if row["session_id"] in sampled]

        if not usage_rows:
            return result

        session_ids = list(dict.fromkeys(row["session_id"] for row in usage_rows))
        sessions = {
            row["session_id"]: row
            for row in await self.aggregate_repo.get_sessions_by_ids(session_ids)
        }

        tool_sessions: set[str] | None = None
        if filters.tool_name:
            tool_rows = await self.aggregate_repo.list_tool_daily_rows(
                session_ids, start, end, tool_name=filters.tool_name
            )
            tool_sessions = {row["session_id"] for row in tool_rows}

        for usage in usage_rows:
            session = sessions.get(usage["session_id"])
            if session is None:
                continue
            if not matches_session_filters(session, filters):
                continue
            if not matches_text_query(session, usage, filters.q):
                continue
            if tool_sessions is not None and usage["session_id"] not in tool_sessions:
                continue
            result.rows.append((session, usage))
        return result

    async def _cached(
        self,
        key: str,
        empty: dict[str, Any],
        loader: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        async def guarded() -> dict[str, Any]:
            try:
                with start_span("usage.query", {"key": key.split(":", 1)[0]}):
                    return await loader()
            except Exception as exc:
                if not is_usage_schema_drift(exc):
                    raise
                logger.warning("Usage query degraded by schema drift: %s", exc)
                return degraded_payload(empty)

        result = await self.cache.get_or_load(key, guarded)
        return result.value

    @staticmethod
    def _with_parity(payload: dict[str, Any], loaded: FilteredRows) -> dict[str, Any]:
        if loaded.parity is not None:
            payload["parity"] = loaded.parity
        return payload

    # ── Views ───────────────────────────────────────────────────────

    async def get_summary(self, params: Mapping[str, Any] | None = None, range_type: str = "daily") -> dict[str, Any]:
        if range_type not in RANGE_TYPES:
            raise UsageQueryError(f"Unsupported range: {range_type}")
        filters = resolve_filters(params)
        empty_totals = {
            **_camel(_counters()),
            "cacheEfficiencyPct": 0.0,
            "sessionCount": 0,
            "avgTokensPerDay": 0,
            "avgCostMicrosPerDay": 0,
        }
        empty_series = [
            {"bucketStart": format_datetime_utc(bucket), **_camel(_counters())}
            for bucket in iter_buckets(filters.from_day, filters.to_day, range_type)
        ]
        empty = {**filters.envelope(), "range": range_type, "totals": empty_totals, "series": empty_series}

        async def load() -> dict[str, Any]:
            loaded = await self._load_rows(filters, "daily")
            buckets: dict[str, dict[str, int]] = defaultdict(_counters)
            totals = _counters()
            for _, usage in loaded.rows:
                day = parse_datetime(usage["bucket_start"])
                key = format_datetime_utc(bucket_start(day, range_type))
                _add_counters(buckets[key], usage)
                _add_counters(totals, usage)

            series = []
            for bucket in iter_buckets(filters.from_day, filters.to_day, range_type):
                key = format_datetime_utc(bucket)
                series.append({"bucketStart": key, **_camel(buckets.get(key) or _counters())})

            day_count = inclusive_day_count(filters.start, filters.end)
            payload = {
                **filters.envelope(),
                "range": range_type,
                "totals": {
                    **_camel(totals),
                    "cacheEfficiencyPct": compute_cache_efficiency(
                        totals["cache_read_tokens"], totals["input_tokens"]
                    ),
                    "sessionCount": len(loaded.session_ids),
                    "avgTokensPerDay": totals["total_tokens"] // day_count,
                    "avgCostMicrosPerDay": totals["total_cost_micros"] // day_count,
                },
                "series": series,
            }
            return self._with_parity(payload, loaded)

        return await self._cached(filters.cache_key("usage.summary", f"range={range_type}"), empty, load)

    async def get_breakdown(self, group_by: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        if group_by not in BREAKDOWN_DIMENSIONS:
            raise UsageQueryError(f"Unsupported groupBy: {group_by}")
        filters = resolve_filters(params)
        empty = {**filters.envelope(), "groupBy": group_by, "groups": []}

        async def load() -> dict[str, Any]:
            loaded = await self._load_rows(filters, "daily")
            if group_by == "tool":
                groups = await self._tool_groups(loaded, filters)
            else:
                groups = self._dimension_groups(loaded, group_by)
            payload = {**filters.envelope(), "groupBy": group_by, "groups": groups}
            return self._with_parity(payload, loaded)

        return await self._cached(filters.cache_key("usage.breakdown", f"groupBy={group_by}"), empty, load)

    @staticmethod
    def _group_key(session: Mapping[str, Any], usage: Mapping[str, Any], group_by: str) -> str:
        if group_by == "agent":
            return _text(session.get("agent_id")) or "unknown"
        if group_by == "model":
            return _model_label(usage.get("model"), usage.get("model_key"))
        if group_by == "provider":
            return _text(session.get("provider_key")) or "unknown"
        if group_by == "source":
            return _text(session.get("source")) or "unknown"
        return _text(session.get("session_class")) or "unknown"

    def _dimension_groups(self, loaded: FilteredRows, group_by: str) -> list[dict]:
        grouped: dict[str, dict[str, int]] = defaultdict(_counters)
        sessions: dict[str, set[str]] = defaultdict(set)
        for session, usage in loaded.rows:
            key = self._group_key(session, usage, group_by)
            _add_counters(grouped[key], usage)
            sessions[key].add(usage["session_id"])
        return _sort_groups(
            [
                {"key": key, **_camel(counters), "sessionCount": len(sessions[key])}
                for key, counters in grouped.items()
            ]
        )

    async def _tool_groups(self, loaded: FilteredRows, filters: UsageFilters) -> list[dict]:
        """Apportion each daily row across that session-day's tools by call count."""
        if not loaded.rows:
            return []
        start, end = filters.window
        tool_rows = await self.aggregate_repo.list_tool_daily_rows(loaded.session_ids, start, end)
        tools_by_day: dict[tuple[str, str], list[tuple[str, int]]] = defaultdict(list)
        for tool in tool_rows:
            name = _text(tool.get("tool_name")) or "unknown"
            tools_by_day[(tool["session_id"], tool["day_start"])].append((name, int(tool["call_count"] or 0)))

        grouped: dict[str, dict[str, int]] = defaultdict(_counters)
        call_counts: dict[str, int] = defaultdict(int)
        sessions: dict[str, set[str]] = defaultdict(set)
        counted_calls: set[tuple[str, str, str]] = set()

        for _, usage in loaded.rows:
            day_key = (usage["session_id"], usage["bucket_start"])
            tools = tools_by_day.get(day_key) or [("unknown", 1)]
            weights = [count for _, count in tools]
            shares = {name: allocate_by_weight(int(usage.get(name) or 0), weights) for name in COUNTER_FIELDS}
            for index, (tool_name, count) in enumerate(tools):
                counters = grouped[tool_name]
                for name in COUNTER_FIELDS:
                    counters[name] += shares[name][index]
                sessions[tool_name].add(usage["session_id"])
                # One session-day can carry several model rows; count its calls once.
                call_key = (usage["session_id"], usage["bucket_start"], tool_name)
                if call_key not in counted_calls and day_key in tools_by_day:
                    counted_calls.add(call_key)
                    call_counts[tool_name] += count

        return _sort_groups(
            [
                {
                    "key": key,
                    **_camel(counters),
                    "sessionCount": len(sessions[key]),
                    "toolCallCount": call_counts[key],
                }
                for key, counters in grouped.items()
            ]
        )

    async def get_sessions(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        filters = resolve_filters(params)
        empty = {
            **filters.envelope(),
            "page": 1,
            "pageSize": filters.page_size,
            "totalSessions": 0,
            "totalPages": 1,
            "sort": filters.sort,
            "rows": [],
        }

        async def load() -> dict[str, Any]:
            loaded = await self._load_rows(filters, "daily")
            by_session: dict[str, dict[str, Any]] = {}
            for session, usage in loaded.rows:
                entry = by_session.get(usage["session_id"])
                if entry is None:
                    entry = {"session": session, "counters": _counters(), "models": {}}
                    by_session[usage["session_id"]] = entry
                _add_counters(entry["counters"], usage)
                entry["models"].setdefault(usage["model_key"], _model_label(usage.get("model"), usage.get("model_key")))

            def sort_key(item: tuple[str, dict[str, Any]]):
                session_id, entry = item
                if filters.sort == "tokens_desc":
                    return (-entry["counters"]["total_tokens"], session_id)
                if filters.sort == "recent_desc":
                    # Newest first.
                    seen = parse_datetime(entry["session"].get("last_seen_at"))
                    return (-(seen.timestamp() if seen else 0.0), session_id)
                return (-entry["counters"]["total_cost_micros"], session_id)

            ordered = sorted(by_session.items(), key=sort_key)
            total_sessions = len(ordered)
            total_pages = max(1, -(-total_sessions // filters.page_size))
            page = min(filters.page, total_pages)
            offset = (page - 1) * filters.page_size

            rows = []
            for session_id, entry in ordered[offset:offset + filters.page_size]:
                session = entry["session"]
                rows.append(
                    {
                        "sessionId": session_id,
                        "agentId": session.get("agent_id"),
                        "sessionKey": session.get("session_key"),
                        "source": session.get("source"),
                        "channel": session.get("channel"),
                        "sessionKind": session.get("session_kind"),
                        "sessionClass": session.get("session_class"),
                        "providerKey": session.get("provider_key"),
                        "operationId": session.get("operation_id"),
                        "workOrderId": session.get("work_order_id"),
                        "hasErrors": bool(session.get("has_errors")),
                        "firstSeenAt": session.get("first_seen_at"),
                        "lastSeenAt": session.get("last_seen_at"),
                        **_camel(entry["counters"]),
                        "modelCount": len(entry["models"]),
                        "topModels": list(entry["models"].values())[:5],
                    }
                )

            payload = {
                **filters.envelope(),
                "page": page,
                "pageSize": filters.page_size,
                "totalSessions": total_sessions,
                "totalPages": total_pages,
                "sort": filters.sort,
                "rows": rows,
            }
            return self._with_parity(payload, loaded)

        return await self._cached(filters.cache_key("usage.sessions"), empty, load)

    async def get_activity(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        filters = resolve_filters(params)

        def blank() -> tuple[list[dict], list[dict]]:
            weekdays = [
                {"weekday": index, "label": label, "totalTokens": 0, "totalCostMicros": 0}
                for index, label in enumerate(WEEKDAY_LABELS)
            ]
            hours = [{"hour": hour, "totalTokens": 0, "totalCostMicros": 0} for hour in range(24)]
            return weekdays, hours

        empty_weekdays, empty_hours = blank()
        empty = {
            **filters.envelope(),
            "totals": {"totalTokens": 0, "totalCostMicros": 0},
            "weekdays": empty_weekdays,
            "hours": empty_hours,
        }

        async def load() -> dict[str, Any]:
            loaded = await self._load_rows(filters, "hourly")
            zone = ZoneInfo(filters.timezone)
            weekdays, hours = blank()
            total_tokens = 0
            total_cost = 0
            for _, usage in loaded.rows:
                hour_start = parse_datetime(usage["bucket_start"])
                local = hour_start.astimezone(zone)
                # Python weekdays start on Monday; labels start on Sunday.
                weekday = (local.weekday() + 1) % 7
                tokens = int(usage.get("total_tokens") or 0)
                cost = int(usage.get("total_cost_micros") or 0)
                weekdays[weekday]["totalTokens"] += tokens
                weekdays[weekday]["totalCostMicros"] += cost
                hours[local.hour]["totalTokens"] += tokens
                hours[local.hour]["totalCostMicros"] += cost
                total_tokens += tokens
                total_cost += cost

            payload = {
                **filters.envelope(),
                "totals": {"totalTokens": total_tokens, "totalCostMicros": total_cost},
                "weekdays": weekdays,
                "hours": hours,
            }
            return self._with_parity(payload, loaded)

        return await self._cached(filters.cache_key("usage.activity"), empty, load)

    async def get_options(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        filters = resolve_filters(params)
        empty = {
            **filters.envelope(),
            "agents": [],
            "sessionClasses": [],
            "sources": [],
            "channels": [],
            "sessionKinds": [],
            "providers": [],
            "models": [],
            "tools": [],
        }

        async def load() -> dict[str, Any]:
            loaded = await self._load_rows(filters, "daily")
            values: dict[str, set[str]] = defaultdict(set)
            models: dict[str, str] = {}
            for session, usage in loaded.rows:
                values["agents"].add(session.get("agent_id") or "unknown")
                for option, column in (
                    ("sessionClasses", "session_class"),
                    ("sources", "source"),
                    ("channels", "channel"),
                    ("sessionKinds", "session_kind"),
                    ("providers", "provider_key"),
                ):
                    if session.get(column):
                        values[option].add(session[column])
                models[usage["model_key"]] = _model_label(usage.get("model"), usage.get("model_key"))

            tools: set[str] = set()
            if loaded.rows:
                start, end = filters.window
                tool_rows = await self.aggregate_repo.list_tool_daily_rows(loaded.session_ids, start, end)
                tools = {row["tool_name"] for row in tool_rows}

            payload = {
                **filters.envelope(),
                "agents": sorted(values["agents"]),
                "sessionClasses": sorted(values["sessionClasses"]),
                "sources": sorted(values["sources"]),
                "channels": sorted(values["channels"]),
                "sessionKinds": sorted(values["sessionKinds"]),
                "providers": sorted(values["providers"]),
                "models": sorted(
                    ({"key": key, "label": label} for key, label in models.items()),
                    key=lambda item: (item["label"], item["key"]),
                ),
                "tools": sorted(tools),
            }
            return self._with_parity(payload, loaded)

        return await self._cached(filters.cache_key("usage.options"), empty, load)

    async def get_parity_scope(self, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        params = params or {}
        try:
            return await self.parity.resolve_scope(params.get("from"), params.get("to"), params.get("sessionLimit"))
        except Exception as exc:
            if not is_usage_schema_drift(exc):
                raise
            logger.warning("Parity scope degraded by schema drift: %s", exc)
            start, end = resolve_range(params.get("from"), params.get("to"), config.DEFAULT_RANGE_DAYS)
            return degraded_payload(empty_scope(start, end, normalize_session_limit(params.get("sessionLimit"))))
