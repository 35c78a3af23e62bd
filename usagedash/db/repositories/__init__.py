"""Repository package for database access."""

from .usage_cursors import SqliteUsageCursorRepository
from .usage_aggregates import SqliteUsageAggregateRepository
from .agent_sessions import SqliteAgentSessionRepository

__all__ = [
    "SqliteUsageCursorRepository",
    "SqliteUsageAggregateRepository",
    "SqliteAgentSessionRepository",
]
