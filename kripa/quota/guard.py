"""Dual-key daily quota enforcement.

A request is admitted only if both its fingerprint counter and its origin
counter for "today" are below the cap. Counters are persisted to a JSON file
that is replaced atomically; a failed write rolls the increment back and the
request is denied.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from kripa.errors import QuotaStoreError
from kripa.observability import record_counter
from kripa.observability.metrics import quota_decisions_total
from kripa.storage import atomic_write_text, read_text_if_exists

logger = logging.getLogger(__name__)

FINGERPRINT = "fingerprint"
ORIGIN = "origin"

# (keyspace, identity)
IdentityKey = tuple[str, str]
# (keyspace, identity, day)
CounterKey = tuple[str, str, str]


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check.

    Attributes:
        admitted: Whether the request may proceed
        remaining: Requests left today for this fingerprint/origin pair
    """

    admitted: bool
    remaining: int


def quota_day(now: datetime, utc_offset_minutes: int = 0) -> str:
    """Calendar day used for quota accounting.

    Args:
        now: Current time (naive values are treated as UTC)
        utc_offset_minutes: Fixed offset applied before taking the date

    Returns:
        ISO date string
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    shifted = now.astimezone(UTC) + timedelta(minutes=utc_offset_minutes)
    return shifted.date().isoformat()


class QuotaGuard:
    """Per-identity daily counters in two keyspaces.

    Example:
        guard = QuotaGuard(Path("counters.json"), daily_cap=3)
        await guard.load()

        decision = await guard.check_and_consume("fp-1", "203.0.113.7")
        if not decision.admitted:
            ...
    """

    def __init__(
        self,
        store_path: Path,
        daily_cap: int = 3,
        utc_offset_minutes: int = 0,
        gc_interval_seconds: float = 300.0,
    ) -> None:
        """Initialize quota guard.

        Args:
            store_path: JSON file holding the counters
            daily_cap: Requests admitted per identity per day
            utc_offset_minutes: Day boundary offset from UTC
            gc_interval_seconds: Minimum spacing of opportunistic GC passes
        """
        if daily_cap < 1:
            raise ValueError("daily_cap must be at least 1")

        self.store_path = store_path
        self.daily_cap = daily_cap
        self.utc_offset_minutes = utc_offset_minutes
        self.gc_interval_seconds = gc_interval_seconds

        self._counters: dict[CounterKey, int] = {}
        self._key_locks: dict[IdentityKey, asyncio.Lock] = {}
        # Serialises snapshot-and-write so a newer snapshot is never overwritten by an older one
        self._persist_lock = asyncio.Lock()
        self._last_gc = time.monotonic()

    def today(self, now: datetime | None = None) -> str:
        return quota_day(now or datetime.now(UTC), self.utc_offset_minutes)

    async def load(self) -> int:
        """Load persisted counters.

        A corrupt store is moved aside and counting restarts from empty.

        Returns:
            Number of counters loaded
        """
        raw = await asyncio.to_thread(read_text_if_exists, self.store_path)
        if raw is None:
            logger.info(f"No quota store at {self.store_path}, starting empty")
            return 0

        try:
            document = json.loads(raw)
            counters = {
                (entry["keyspace"], entry["identity"], entry["day"]): int(entry["count"])
                for entry in document["counters"]
            }
        except (ValueError, KeyError, TypeError) as e:
            quarantine = self.store_path.with_name(
                f"{self.store_path.name}.corrupt-{int(time.time())}"
            )
            await asyncio.to_thread(self.store_path.replace, quarantine)
            logger.error(f"❌ Corrupt quota store moved to {quarantine}: {type(e).__name__}")
            return 0

        self._counters = counters
        logger.info(f"Loaded {len(counters)} quota counters from {self.store_path}")
        return len(counters)

    def _lock_for(self, key: IdentityKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    def _remaining(self, fp_count: int, origin_count: int) -> int:
        return max(0, self.daily_cap - max(fp_count, origin_count))

    def peek(self, fingerprint: str, origin: str | None = None, now: datetime | None = None) -> int:
        """Remaining allowance without consuming.

        Args:
            fingerprint: Client fingerprint
            origin: Network origin (ignored when None)
            now: Current time

        Returns:
            Remaining requests today
        """
        day = self.today(now)
        fp_count = self._counters.get((FINGERPRINT, fingerprint, day), 0)
        origin_count = self._counters.get((ORIGIN, origin, day), 0) if origin else 0
        return self._remaining(fp_count, origin_count)

    async def check_and_consume(
        self,
        fingerprint: str,
        origin: str,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Admit and count a request if both identities are under the cap.

        Args:
            fingerprint: Client fingerprint
            origin: Network origin
            now: Current time

        Returns:
            QuotaDecision; a denial is a normal outcome with remaining=0
        """
        day = self.today(now)
        identities = sorted({(FINGERPRINT, fingerprint), (ORIGIN, origin)})

        async with AsyncExitStack() as stack:
            # Sorted acquisition keeps two requests sharing a key from deadlocking
            for identity in identities:
                await stack.enter_async_context(self._lock_for(identity))

            fp_key: CounterKey = (FINGERPRINT, fingerprint, day)
            origin_key: CounterKey = (ORIGIN, origin, day)
            fp_count = self._counters.get(fp_key, 0)
            origin_count = self._counters.get(origin_key, 0)

            if fp_count >= self.daily_cap or origin_count >= self.daily_cap:
                quota_decisions_total.labels(decision="denied").inc()
                record_counter("quota.decisions", 1, {"decision": "denied"})
                logger.info(
                    f"Quota denied fp={fingerprint[:8]} "
                    f"(fp={fp_count}, origin={origin_count}, cap={self.daily_cap})"
                )
                return QuotaDecision(admitted=False, remaining=0)

            try:
                await self._commit_increment(fp_key, origin_key)
            except QuotaStoreError as e:
                quota_decisions_total.labels(decision="store_error").inc()
                record_counter("quota.decisions", 1, {"decision": "store_error"})
                logger.error(f"❌ Quota store write failed, denying request: {e.message}")
                return QuotaDecision(admitted=False, remaining=0)

            remaining = self._remaining(self._counters[fp_key], self._counters[origin_key])

        quota_decisions_total.labels(decision="admitted").inc()
        record_counter("quota.decisions", 1, {"decision": "admitted"})

        if time.monotonic() - self._last_gc >= self.gc_interval_seconds:
            self._collect(day)

        return QuotaDecision(admitted=True, remaining=remaining)

    async def _commit_increment(self, fp_key: CounterKey, origin_key: CounterKey) -> None:
        """Increment both counters and persist, rolling back on failure.

        Must be called with both identity locks held.

        Raises:
            QuotaStoreError: If the store could not be written
        """
        async with self._persist_lock:
            self._counters[fp_key] = self._counters.get(fp_key, 0) + 1
            self._counters[origin_key] = self._counters.get(origin_key, 0) + 1
            try:
                await self._write_snapshot()
            except OSError as e:
                for key in (fp_key, origin_key):
                    self._counters[key] -= 1
                    if self._counters[key] <= 0:
                        del self._counters[key]
                raise QuotaStoreError(
                    f"Could not persist quota counters: {e}",
                    {"path": str(self.store_path)},
                ) from e

    def _serialize(self) -> str:
        return json.dumps(
            {
                "version": 1,
                "counters": [
                    {"keyspace": keyspace, "identity": identity, "day": day, "count": count}
                    for (keyspace, identity, day), count in sorted(self._counters.items())
                ],
            },
            separators=(",", ":"),
        )

    async def _write_snapshot(self) -> None:
        payload = self._serialize()
        await asyncio.to_thread(atomic_write_text, self.store_path, payload)

    def _collect(self, today: str) -> int:
        """Drop counters from other days whose identity is not locked."""
        self._last_gc = time.monotonic()
        stale = []
        for key in self._counters:
            lock = self._key_locks.get((key[0], key[1]))
            if key[2] != today and (lock is None or not lock.locked()):
                stale.append(key)
        for key in stale:
            del self._counters[key]

        live_identities = {(k[0], k[1]) for k in self._counters}
        for identity, lock in list(self._key_locks.items()):
            if identity not in live_identities and not lock.locked():
                del self._key_locks[identity]

        if stale:
            logger.debug(f"Quota GC removed {len(stale)} stale counters")
        return len(stale)

    async def collect_garbage(self, now: datetime | None = None) -> int:
        """Remove stale-day counters and persist the result.

        Args:
            now: Current time

        Returns:
            Number of counters removed
        """
        removed = self._collect(self.today(now))
        if removed:
            await self.flush()
        return removed

    async def flush(self) -> None:
        """Persist the current counters.

        Raises:
            QuotaStoreError: If the store could not be written
        """
        async with self._persist_lock:
            try:
                await self._write_snapshot()
            except OSError as e:
                raise QuotaStoreError(f"Could not persist quota counters: {e}") from e

    def counts(self, now: datetime | None = None) -> dict[str, int]:
        """Number of live counters per keyspace for today."""
        day = self.today(now)
        result = {FINGERPRINT: 0, ORIGIN: 0}
        for keyspace, _, counter_day in self._counters:
            if counter_day == day:
                result[keyspace] += 1
        return result

    def __len__(self) -> int:
        return len(self._counters)
