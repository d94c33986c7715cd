"""Event ledger: records events into day shards and aggregates them.

Writers to one day are serialised by a per-day lock. Readers never lock:
shard files are replaced atomically, so a reader sees either the previous or
the new complete shard.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta

from kripa.errors import ShardCorruptError
from kripa.ledger.analytics import DayContent, StatsReport, aggregate
from kripa.ledger.models import (
    DETAIL_LISTS,
    DailyShard,
    EventAction,
    EventEntry,
    FeatureUsage,
    LedgerEvent,
    SessionRecord,
    ShardArchive,
    ShardSummary,
    UserActivity,
    derive_session_id,
    recompute_summary,
)
from kripa.ledger.shard_store import ShardStore
from kripa.observability import record_counter, traced
from kripa.observability.metrics import (
    ledger_events_total,
    ledger_rotations_total,
    ledger_shard_size_bytes,
)

logger = logging.getLogger(__name__)

# Day shards kept in memory between writes
_CACHED_DAYS = 2


def shard_day(timestamp: datetime) -> str:
    """UTC calendar day of an event."""
    return timestamp.astimezone(UTC).date().isoformat()


def day_range(start: str, end: str) -> list[str]:
    """Inclusive list of ISO days.

    Raises:
        ValueError: If a bound is not an ISO date or ``end`` precedes ``start``
    """
    first = date.fromisoformat(start)
    last = date.fromisoformat(end)
    if last < first:
        raise ValueError(f"End day {end} is before start day {start}")
    return [(first + timedelta(days=offset)).isoformat() for offset in range((last - first).days + 1)]


class EventLedger:
    """Append-and-aggregate analytics store."""

    def __init__(
        self,
        store: ShardStore,
        shard_size_ceiling_bytes: int = 5 * 1024 * 1024,
        session_window_minutes: int = 30,
    ) -> None:
        """Initialize ledger.

        Args:
            store: Shard file store
            shard_size_ceiling_bytes: Serialized size that triggers rotation
            session_window_minutes: Width of derived session windows
        """
        self.store = store
        self.shard_size_ceiling_bytes = shard_size_ceiling_bytes
        self.session_window_minutes = session_window_minutes

        self._day_locks: dict[str, asyncio.Lock] = {}
        self._shards: dict[str, DailyShard] = {}

    def _lock_for(self, day: str) -> asyncio.Lock:
        lock = self._day_locks.get(day)
        if lock is None:
            lock = self._day_locks[day] = asyncio.Lock()
        return lock

    async def _open_shard(self, day: str) -> DailyShard:
        """Return the writable shard for ``day``; caller holds the day lock."""
        shard = self._shards.get(day)
        if shard is not None:
            return shard

        try:
            shard = await asyncio.to_thread(self.store.load_shard, day)
        except ShardCorruptError as e:
            logger.error(f"❌ {e.message} ({e.reason}); starting a new empty shard")
            await asyncio.to_thread(self.store.quarantine, self.store.shard_path(day))
            shard = None

        if shard is None:
            shard = DailyShard(day=day)
            logger.info(f"Created analytics shard for {day}")

        self._shards[day] = shard
        for stale in sorted(self._shards)[:-_CACHED_DAYS]:
            if not self._lock_for(stale).locked():
                del self._shards[stale]
                self._day_locks.pop(stale, None)
        return shard

    @traced("ledger.record")
    async def record(self, event: LedgerEvent) -> bool:
        """Record one event into its day shard.

        Persistence failures are logged and reported through the return
        value; they never raise.

        Args:
            event: Event to record

        Returns:
            True if the shard was persisted
        """
        day = shard_day(event.timestamp)
        action = event.action.value

        async with self._lock_for(day):
            shard = await self._open_shard(day)
            self._apply(shard, event)

            try:
                size = await self._persist(shard)
            except OSError as e:
                ledger_events_total.labels(action=action, status="error").inc()
                logger.error(f"❌ Failed to persist analytics shard {day}: {e}")
                return False

        ledger_events_total.labels(action=action, status="recorded").inc()
        ledger_shard_size_bytes.set(size)
        record_counter("ledger.events", 1, {"action": action})
        return True

    def _apply(self, shard: DailyShard, event: LedgerEvent) -> None:
        """Fold an event into the shard's lists, maps and summary."""
        ts = event.timestamp
        session_id = event.session_id or derive_session_id(
            event.fingerprint, ts, self.session_window_minutes
        )
        summary = shard.summary

        user = shard.users.get(event.fingerprint)
        if user is None:
            user = shard.users[event.fingerprint] = UserActivity(first_seen=ts, last_seen=ts)
            summary.total_users += 1
        user.first_seen = min(user.first_seen, ts)
        user.last_seen = max(user.last_seen, ts)
        if session_id not in user.sessions:
            user.sessions.append(session_id)

        session = shard.sessions.get(session_id)
        if session is None:
            session = shard.sessions[session_id] = SessionRecord(
                fingerprint=event.fingerprint, start=ts, end=ts
            )
            summary.total_sessions += 1
        session.start = min(session.start, ts)
        session.end = max(session.end, ts)
        session.duration_seconds = (session.end - session.start).total_seconds()
        session.events += 1

        entry = EventEntry(
            timestamp=ts,
            fingerprint=event.fingerprint,
            session_id=session_id,
            topic=event.topic,
            language=event.language,
            question_length=event.question_length,
            helpful=event.helpful,
            page=event.page,
            data=event.data,
        )

        match event.action:
            case EventAction.PAGE_VIEW:
                shard.page_views.append(entry)
                user.page_views += 1
                session.page_views += 1
                summary.total_page_views += 1
            case EventAction.QUESTION_ASKED:
                shard.questions.append(entry)
                user.questions += 1
                session.questions += 1
                summary.total_questions += 1
            case EventAction.FEEDBACK:
                shard.feedback.append(entry)
                user.feedback += 1
                summary.total_feedback += 1
                if event.helpful:
                    summary.helpful_feedback += 1
            case EventAction.RATE_LIMIT_HIT:
                shard.rate_limit_hits.append(entry)
                user.rate_limit_hits += 1
                summary.total_rate_limit_hits += 1
            case EventAction.FEATURE_USAGE:
                usage = shard.feature_usage.setdefault(event.feature or "unknown", FeatureUsage())
                usage.count += 1
                if event.fingerprint not in usage.users:
                    usage.users.append(event.fingerprint)
                summary.total_feature_events += 1
            case EventAction.SESSION_END:
                shard.session_ends.append(entry)
                session.ended = True
                summary.total_session_ends += 1

        shard.updated_at = datetime.now(UTC)

    async def _persist(self, shard: DailyShard) -> int:
        """Write the shard, rotating detail lists out when over the ceiling."""
        payload = self.store.serialize(shard)
        if len(payload.encode("utf-8")) > self.shard_size_ceiling_bytes:
            await self._rotate(shard)
            payload = self.store.serialize(shard)
        return await asyncio.to_thread(self.store.save_shard, shard, payload)

    async def _rotate(self, shard: DailyShard) -> None:
        """Move the shard's detail lists into the day archive.

        The archive is written before the lists are cleared, so a failed
        archive write leaves the live shard intact.
        """
        try:
            archive = await asyncio.to_thread(self.store.load_archive, shard.day)
        except ShardCorruptError as e:
            logger.error(f"❌ {e.message}; starting a new archive")
            await asyncio.to_thread(self.store.quarantine, self.store.archive_path(shard.day))
            archive = None

        archive = archive or ShardArchive(day=shard.day)
        now = datetime.now(UTC)
        moved = 0
        for name in DETAIL_LISTS:
            entries = getattr(shard, name)
            getattr(archive, name).extend(entries)
            moved += len(entries)
        archive.rotations += 1
        archive.archived_at = now

        await asyncio.to_thread(self.store.save_archive, archive)

        for name in DETAIL_LISTS:
            setattr(shard, name, [])
        shard.archived = True
        shard.archived_at = now

        ledger_rotations_total.inc()
        logger.warning(
            f"⚠️ Analytics shard {shard.day} exceeded {self.shard_size_ceiling_bytes} bytes; "
            f"archived {moved} entries (rotation #{archive.rotations})"
        )

    async def read_day(self, day: str) -> DayContent:
        """Read a day's shard and archive from disk without locking.

        Raises:
            ShardCorruptError: If either file exists but cannot be parsed
        """
        shard = await asyncio.to_thread(self.store.load_shard, day)
        archive = await asyncio.to_thread(self.store.load_archive, day)
        return DayContent(day=day, shard=shard, archive=archive)

    @traced("ledger.aggregate")
    async def aggregate(self, start: str, end: str) -> StatsReport:
        """Aggregate a range of days.

        Corrupt days are skipped and listed in the report.

        Args:
            start: First ISO day (inclusive)
            end: Last ISO day (inclusive)

        Returns:
            StatsReport

        Raises:
            ValueError: If the range is invalid
        """
        contents: list[DayContent] = []
        corrupt: list[str] = []
        for day in day_range(start, end):
            try:
                contents.append(await self.read_day(day))
            except ShardCorruptError as e:
                logger.warning(f"Skipping corrupt analytics for {day}: {e.reason}")
                corrupt.append(day)
        return aggregate(contents, start, end, corrupt)

    async def verify_day(self, day: str) -> tuple[ShardSummary, ShardSummary] | None:
        """Compare a shard's cached summary with one rebuilt from its records.

        Returns:
            (cached, recomputed), or None when the day has no shard

        Raises:
            ShardCorruptError: If the shard or archive cannot be parsed
        """
        content = await self.read_day(day)
        if content.shard is None:
            return None
        return content.shard.summary, recompute_summary(content.shard, content.archive)
