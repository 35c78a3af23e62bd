"""Shared UTC window and bucket helpers for usage telemetry."""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any

RANGE_ROUND_MS = 60_000
_DAY = timedelta(days=1)
_EPOCH_MS_THRESHOLD = 10_000_000_000


def format_datetime_utc(value: datetime) -> str:
    """Render an aware or naive datetime as `YYYY-MM-DDTHH:MM:SS.mmmZ` in UTC."""
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO strings, epoch seconds, or epoch milliseconds into UTC datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        try:
            parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def start_of_utc_day(value: datetime) -> datetime:
    dt = value.astimezone(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_utc_hour(value: datetime) -> datetime:
    dt = value.astimezone(timezone.utc)
    return dt.replace(minute=0, second=0, microsecond=0)


def start_of_utc_week(value: datetime) -> datetime:
    """Monday 00:00 UTC of the week containing `value`."""
    day = start_of_utc_day(value)
    return day - timedelta(days=day.weekday())


def start_of_utc_month(value: datetime) -> datetime:
    return start_of_utc_day(value).replace(day=1)


def bucket_start(value: datetime, range_type: str) -> datetime:
    if range_type == "weekly":
        return start_of_utc_week(value)
    if range_type == "monthly":
        return start_of_utc_month(value)
    return start_of_utc_day(value)


def next_bucket_start(value: datetime, range_type: str) -> datetime:
    if range_type == "weekly":
        return value + timedelta(days=7)
    if range_type == "monthly":
        if value.month == 12:
            return value.replace(year=value.year + 1, month=1)
        return value.replace(month=value.month + 1)
    return value + _DAY


def rounded_now(now: datetime | None = None) -> datetime:
    """Current time floored to the minute so cache keys stay stable."""
    current = now or datetime.now(timezone.utc)
    epoch_ms = int(current.timestamp() * 1000)
    floored = (epoch_ms // RANGE_ROUND_MS) * RANGE_ROUND_MS
    return datetime.fromtimestamp(floored / 1000, timezone.utc)


def resolve_range(
    from_value: Any,
    to_value: Any,
    default_days: int,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Resolve an inclusive [from, to] window, defaulting and swapping as needed."""
    fallback_to = rounded_now(now)
    fallback_from = fallback_to - timedelta(days=max(1, default_days))

    start = parse_datetime(from_value) or fallback_from
    end = parse_datetime(to_value) or fallback_to
    if start > end:
        start, end = end, start
    return start, end


def inclusive_day_count(start: datetime, end: datetime) -> int:
    days = (start_of_utc_day(end) - start_of_utc_day(start)).days + 1
    return days if days > 0 else 1


def iter_buckets(start: datetime, end: datetime, range_type: str):
    """Yield every bucket start from the bucket holding `start` through `end`."""
    cursor = bucket_start(start, range_type)
    stop = bucket_start(end, range_type)
    while cursor <= stop:
        yield cursor
        cursor = next_bucket_start(cursor, range_type)
