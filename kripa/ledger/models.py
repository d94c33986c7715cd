"""Event ledger data models.

A day shard is the unit of durability. Its ``summary`` is a cache: every
total can be rebuilt from the raw lists and maps with ``recompute_summary``.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class EventAction(str, Enum):
    """Kinds of events the ledger accepts."""

    PAGE_VIEW = "page_view"
    QUESTION_ASKED = "question_asked"
    FEEDBACK = "feedback"
    RATE_LIMIT_HIT = "rate_limit_hit"
    FEATURE_USAGE = "feature_usage"
    SESSION_END = "session_end"


class LedgerEvent(BaseModel):
    """One event submitted for recording."""

    action: EventAction
    fingerprint: str = Field(min_length=1, max_length=256)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    session_id: str | None = None
    topic: str | None = None
    language: str | None = None
    question_length: int | None = None
    helpful: bool | None = None
    feature: str | None = None
    page: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return v.replace(tzinfo=UTC) if v.tzinfo is None else v.astimezone(UTC)


class EventEntry(BaseModel):
    """Persisted form of an event in one of the append-only lists."""

    timestamp: datetime
    fingerprint: str
    session_id: str
    topic: str | None = None
    language: str | None = None
    question_length: int | None = None
    helpful: bool | None = None
    page: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class UserActivity(BaseModel):
    """Per-fingerprint running state for one day."""

    first_seen: datetime
    last_seen: datetime
    page_views: int = 0
    questions: int = 0
    feedback: int = 0
    rate_limit_hits: int = 0
    sessions: list[str] = Field(default_factory=list)


class SessionRecord(BaseModel):
    """Per-session running state."""

    fingerprint: str
    start: datetime
    end: datetime
    duration_seconds: float = 0.0
    page_views: int = 0
    questions: int = 0
    events: int = 0
    ended: bool = False


class FeatureUsage(BaseModel):
    """Usage count and distinct users of one feature."""

    count: int = 0
    users: list[str] = Field(default_factory=list)


class ShardSummary(BaseModel):
    """Cached totals of a shard and its archive."""

    total_users: int = 0
    total_sessions: int = 0
    total_questions: int = 0
    total_page_views: int = 0
    total_feedback: int = 0
    helpful_feedback: int = 0
    total_rate_limit_hits: int = 0
    total_session_ends: int = 0
    total_feature_events: int = 0


# Append-only lists moved to the archive on rotation
DETAIL_LISTS = ("questions", "feedback", "page_views", "rate_limit_hits", "session_ends")


class DailyShard(BaseModel):
    """One calendar day of analytics."""

    day: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    users: dict[str, UserActivity] = Field(default_factory=dict)
    sessions: dict[str, SessionRecord] = Field(default_factory=dict)
    questions: list[EventEntry] = Field(default_factory=list)
    feedback: list[EventEntry] = Field(default_factory=list)
    page_views: list[EventEntry] = Field(default_factory=list)
    rate_limit_hits: list[EventEntry] = Field(default_factory=list)
    session_ends: list[EventEntry] = Field(default_factory=list)
    feature_usage: dict[str, FeatureUsage] = Field(default_factory=dict)
    summary: ShardSummary = Field(default_factory=ShardSummary)
    archived: bool = False
    archived_at: datetime | None = None


class ShardArchive(BaseModel):
    """Detail lists rotated out of a day shard."""

    day: str
    rotations: int = 0
    archived_at: datetime | None = None
    questions: list[EventEntry] = Field(default_factory=list)
    feedback: list[EventEntry] = Field(default_factory=list)
    page_views: list[EventEntry] = Field(default_factory=list)
    rate_limit_hits: list[EventEntry] = Field(default_factory=list)
    session_ends: list[EventEntry] = Field(default_factory=list)


def window_start(timestamp: datetime, width_minutes: int = 30) -> int:
    """Epoch-aligned start (seconds) of the session window holding ``timestamp``."""
    width = width_minutes * 60
    return int(timestamp.timestamp() // width) * width


def derive_session_id(fingerprint: str, timestamp: datetime, width_minutes: int = 30) -> str:
    """Session id for a fingerprint's activity within one window."""
    start = window_start(timestamp, width_minutes)
    return hashlib.sha256(f"{fingerprint}:{start}".encode()).hexdigest()[:16]


def detail_entries(shard: DailyShard | None, archive: ShardArchive | None, name: str) -> list[EventEntry]:
    """Archived entries followed by live entries of one detail list."""
    entries: list[EventEntry] = []
    if archive is not None:
        entries.extend(getattr(archive, name))
    if shard is not None:
        entries.extend(getattr(shard, name))
    return entries


def recompute_summary(shard: DailyShard, archive: ShardArchive | None = None) -> ShardSummary:
    """Rebuild a shard summary from raw records.

    Args:
        shard: Live shard
        archive: Archive of the same day, if any

    Returns:
        Summary computed only from the lists and maps
    """
    feedback = detail_entries(shard, archive, "feedback")
    return ShardSummary(
        total_users=len(shard.users),
        total_sessions=len(shard.sessions),
        total_questions=len(detail_entries(shard, archive, "questions")),
        total_page_views=len(detail_entries(shard, archive, "page_views")),
        total_feedback=len(feedback),
        helpful_feedback=sum(1 for entry in feedback if entry.helpful),
        total_rate_limit_hits=len(detail_entries(shard, archive, "rate_limit_hits")),
        total_session_ends=len(detail_entries(shard, archive, "session_ends")),
        total_feature_events=sum(usage.count for usage in shard.feature_usage.values()),
    )
