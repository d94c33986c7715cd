"""Event ledger with day shards, session windows and aggregation."""

from kripa.ledger.analytics import DayContent, StatsReport, aggregate
from kripa.ledger.ledger import EventLedger, day_range, shard_day
from kripa.ledger.models import (
    DailyShard,
    EventAction,
    LedgerEvent,
    ShardArchive,
    ShardSummary,
    derive_session_id,
    recompute_summary,
    window_start,
)
from kripa.ledger.shard_store import ShardStore

__all__ = [
    "DailyShard",
    "DayContent",
    "EventAction",
    "EventLedger",
    "LedgerEvent",
    "ShardArchive",
    "ShardStore",
    "ShardSummary",
    "StatsReport",
    "aggregate",
    "day_range",
    "derive_session_id",
    "recompute_summary",
    "shard_day",
    "window_start",
]
