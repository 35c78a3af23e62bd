"""CSV rendering for the usage export download."""
from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Any, Mapping

EXPORT_FORMATS = ("csv", "json")

SERIES_COLUMNS = (
    ("dayStart", "bucketStart"),
    ("inputTokens", "inputTokens"),
    ("outputTokens", "outputTokens"),
    ("cacheReadTokens", "cacheReadTokens"),
    ("cacheWriteTokens", "cacheWriteTokens"),
    ("totalTokens", "totalTokens"),
    ("totalCostMicros", "totalCostMicros"),
)
BREAKDOWN_COLUMNS = ("key", "totalTokens", "totalCostMicros", "sessionCount")


def export_filename(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return f"usage-export-{stamp}.csv"


def render_usage_csv(summary: Mapping[str, Any], breakdown: Mapping[str, Any]) -> str:
    """Window header, the summary series and the per-model breakdown as one CSV document.

    Every cell is quoted; sections are separated by a blank line.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(["from", summary.get("from")])
    writer.writerow(["to", summary.get("to")])
    writer.writerow(["timezone", summary.get("timezone")])
    writer.writerow([])

    writer.writerow(["daily_series"])
    writer.writerow([header for header, _ in SERIES_COLUMNS])
    for point in summary.get("series") or []:
        writer.writerow([point.get(field) for _, field in SERIES_COLUMNS])
    writer.writerow([])

    writer.writerow(["model_breakdown"])
    writer.writerow(BREAKDOWN_COLUMNS)
    for group in breakdown.get("groups") or []:
        writer.writerow([group.get(field) for field in BREAKDOWN_COLUMNS])
    return buffer.getvalue()
