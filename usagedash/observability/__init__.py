"""Observability helpers."""

from usagedash.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_pass,
    record_skipped_lines,
    record_token_cost,
    record_cache_result,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_pass",
    "record_skipped_lines",
    "record_token_cost",
    "record_cache_result",
]
