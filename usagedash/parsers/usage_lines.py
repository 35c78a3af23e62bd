"""Normalize one JSONL event-log line into a usage record.

Producers have renamed fields across versions, so every concept is read
through an ordered tuple of candidate paths and the first present value wins.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable

from usagedash.date_utils import parse_datetime

_MICROS = Decimal(1_000_000)

# Counters are stored as signed 64-bit integers.
MAX_COUNTER = 2**63 - 1
_MAX_COST = Decimal(MAX_COUNTER) / _MICROS

FieldPath = tuple[str, ...]

USAGE_RULES: tuple[FieldPath, ...] = (
    ("usage",),
    ("message", "usage"),
    ("payload", "usage"),
)

MODEL_RULES: tuple[FieldPath, ...] = (
    ("model",),
    ("message", "model"),
    ("usage", "model"),
    ("message", "usage", "model"),
    ("payload", "model"),
)

TIMESTAMP_RULES: tuple[FieldPath, ...] = (
    ("createdAt",),
    ("timestamp",),
    ("ts",),
    ("message", "createdAt"),
    ("message", "timestamp"),
)

CONTENT_RULES: tuple[FieldPath, ...] = (
    ("content",),
    ("message", "content"),
    ("payload", "content"),
)

# Keys looked up inside the usage object.
INPUT_TOKEN_KEYS = ("inputTokens", "input", "input_tokens", "prompt_tokens")
OUTPUT_TOKEN_KEYS = ("outputTokens", "output", "output_tokens", "completion_tokens")
CACHE_READ_TOKEN_KEYS = ("cacheReadTokens", "cacheRead", "cache_read_input_tokens", "cache_read_tokens")
CACHE_WRITE_TOKEN_KEYS = ("cacheWriteTokens", "cacheWrite", "cache_creation_input_tokens", "cache_write_tokens")
TOTAL_TOKEN_KEYS = ("totalTokens", "total", "total_tokens")
COST_KEYS = ("cost", "costUsd", "cost_usd")
COST_COMPONENT_KEYS = ("input", "output", "cacheRead", "cacheWrite")

TOOL_CALL_TYPES = frozenset({"toolCall", "tool_use", "toolUse"})
ERROR_LEVELS = frozenset({"error", "fatal"})
ERROR_TYPE_MARKERS = ("error", "exception", "failed")
ERROR_KEYS = ("error", "err", "exception")


@dataclass
class ParsedUsageLine:
    seen_at: datetime
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0
    total_cost_micros: int = 0
    tool_calls: list[str] = field(default_factory=list)
    has_error: bool = False
    has_usage: bool = False


def _as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _lookup(record: dict[str, Any], path: FieldPath) -> Any:
    current: Any = record
    for key in path:
        current = _as_record(current)
        if current is None or key not in current:
            return None
        current = current[key]
    return current


def _first(record: dict[str, Any], rules: tuple[FieldPath, ...], accept: Callable[[Any], bool]) -> Any:
    for path in rules:
        value = _lookup(record, path)
        if value is not None and accept(value):
            return value
    return None


def _first_key(record: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _to_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        # repr() keeps the shortest round-tripping digits, so 0.0004 stays 0.0004.
        return Decimal(repr(value))
    if isinstance(value, str) and value.strip():
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def to_token_count(value: Any) -> int:
    parsed = _to_decimal(value)
    if parsed is None or parsed <= 0 or parsed > MAX_COUNTER:
        return 0
    return int(parsed)


def to_cost_micros(value: Any) -> int:
    """Scale a currency amount to integer micro-units, rounding half up."""
    parsed = _to_decimal(value)
    if parsed is None or parsed <= 0 or parsed > _MAX_COST:
        return 0
    return int((parsed * _MICROS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_cost_micros(cost: Any) -> int:
    if cost is None or cost == "":
        return 0
    record = _as_record(cost)
    if record is None:
        return to_cost_micros(cost)
    if record.get("total") is not None:
        return to_cost_micros(record["total"])
    return sum(to_cost_micros(record.get(key)) for key in COST_COMPONENT_KEYS)


def _pick_usage(record: dict[str, Any]) -> dict[str, Any] | None:
    return _first(record, USAGE_RULES, lambda value: isinstance(value, dict))


def _pick_model(record: dict[str, Any]) -> str | None:
    value = _first(record, MODEL_RULES, lambda value: isinstance(value, str) and bool(value.strip()))
    return value.strip() if value else None


def _pick_seen_at(record: dict[str, Any]) -> datetime | None:
    for path in TIMESTAMP_RULES:
        parsed = parse_datetime(_lookup(record, path))
        if parsed is not None:
            return parsed
    return None


def _tool_name(item: dict[str, Any]) -> str | None:
    name = item.get("name")
    if item.get("type") in TOOL_CALL_TYPES and isinstance(name, str) and name.strip():
        return name.strip().lower()
    nested = _as_record(item.get("toolCall"))
    if nested is not None:
        nested_name = nested.get("name")
        if isinstance(nested_name, str) and nested_name.strip():
            return nested_name.strip().lower()
    return None


def extract_tool_calls(record: dict[str, Any]) -> list[str]:
    """Tool names in content order; repeated calls are kept."""
    names: list[str] = []
    for path in CONTENT_RULES:
        content = _lookup(record, path)
        if not isinstance(content, list):
            continue
        for part in content:
            item = _as_record(part)
            if item is None:
                continue
            name = _tool_name(item)
            if name:
                names.append(name)
    return names


def line_has_error(record: dict[str, Any]) -> bool:
    level = record.get("level")
    if isinstance(level, str) and level.strip().lower() in ERROR_LEVELS:
        return True

    line_type = record.get("type")
    if isinstance(line_type, str):
        lowered = line_type.lower()
        if any(marker in lowered for marker in ERROR_TYPE_MARKERS):
            return True

    if any(key in record for key in ERROR_KEYS):
        return True

    message = _as_record(record.get("message"))
    if message is not None:
        if "error" in message:
            return True
        role = message.get("role")
        text = message.get("content")
        if (
            isinstance(role, str)
            and role.lower() == "system"
            and isinstance(text, str)
            and "error" in text.lower()
        ):
            return True
    return False


def parse_usage_line(line: str, now: datetime | None = None) -> ParsedUsageLine | None:
    """Parse one raw line, or return None when it carries no usable signal."""
    trimmed = (line or "").strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return None
    record = _as_record(parsed)
    if record is None:
        return None

    usage = _pick_usage(record)
    tool_calls = extract_tool_calls(record)
    has_error = line_has_error(record)
    if usage is None and not tool_calls and not has_error:
        return None

    seen_at = _pick_seen_at(record) or now or datetime.now(timezone.utc)
    result = ParsedUsageLine(
        seen_at=seen_at.astimezone(timezone.utc),
        model=_pick_model(record),
        tool_calls=tool_calls,
        has_error=has_error,
        has_usage=usage is not None,
    )
    if usage is None:
        return result

    result.input_tokens = to_token_count(_first_key(usage, INPUT_TOKEN_KEYS))
    result.output_tokens = to_token_count(_first_key(usage, OUTPUT_TOKEN_KEYS))
    result.cache_read_tokens = to_token_count(_first_key(usage, CACHE_READ_TOKEN_KEYS))
    result.cache_write_tokens = to_token_count(_first_key(usage, CACHE_WRITE_TOKEN_KEYS))

    explicit_total = _first_key(usage, TOTAL_TOKEN_KEYS)
    if explicit_total is not None:
        result.total_tokens = to_token_count(explicit_total)
    else:
        result.total_tokens = (
            result.input_tokens
            + result.output_tokens
            + result.cache_read_tokens
            + result.cache_write_tokens
        )

    result.total_cost_micros = parse_cost_micros(_first_key(usage, COST_KEYS))
    return result
