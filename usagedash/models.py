"""Pydantic models for the usage API request and response bodies."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Optional


# ── Ingestion ───────────────────────────────────────────────────────

class UsageSyncRequest(BaseModel):
    maxMs: Optional[int] = Field(default=None, ge=0, le=600_000)
    maxFiles: Optional[int] = Field(default=None, ge=0, le=100_000)
    force: bool = False
    priorityPaths: list[str] = Field(default_factory=list)


class UsageSyncResponse(BaseModel):
    ok: bool = True
    lockAcquired: bool = True
    force: bool = False
    filesScanned: int = 0
    filesUpdated: int = 0
    sessionsUpdated: int = 0
    toolsUpserted: int = 0
    cursorResets: int = 0
    linesParsed: int = 0
    linesSkipped: int = 0
    filesTotal: int = 0
    filesRemaining: int = 0
    coveragePct: float = 0.0
    durationMs: int = 0


# ── Cache ───────────────────────────────────────────────────────────

class CacheInvalidateRequest(BaseModel):
    key: Optional[str] = None
    prefix: Optional[str] = None


class CacheInvalidateResponse(BaseModel):
    status: str = "ok"
    scope: str  # "key" | "prefix" | "all"
    target: Optional[str] = None
    evicted: Optional[int] = None
