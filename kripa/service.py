"""Story retrieval orchestration.

Request flow: Admission Gate -> Quota Guard -> Embed -> Rank -> Compose,
with the outcome recorded in the Event Ledger. Ledger writes are shielded
from request cancellation: once quota has been consumed the interaction is
recorded even if the client goes away.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from kripa.corpus import Corpus
from kripa.errors import EmbeddingServiceError
from kripa.gate import AdmissionGate, GateDecision, GateReason
from kripa.ledger import EventAction, EventLedger, LedgerEvent, StatsReport
from kripa.models import Query, ScoredStory
from kripa.observability import add_span_attributes, trace_operation, traced
from kripa.observability.metrics import (
    best_similarity_score,
    search_duration_seconds,
    search_requests_total,
)
from kripa.processing.embeddings import EmbeddingService
from kripa.processing.guidance import FALLBACK_MESSAGE, Guidance, GuidanceComposer
from kripa.processing.question import prepare_question
from kripa.processing.ranking import RankStatus, SimilarityRanker
from kripa.quota import QuotaGuard

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = (
    "You've reached today's limit of questions. Please come back tomorrow; "
    "in the meantime, sit quietly with what you've received."
)
UNAVAILABLE_MESSAGE = "We couldn't search the stories right now. Please try again in a little while."


class OutcomeKind(str, Enum):
    MATCHED = "matched"
    FALLBACK = "no_match"
    RATE_LIMITED = "rate_limited"
    BOT_DETECTED = "bot_detected"
    UNAVAILABLE = "unavailable"


@dataclass
class SearchOutcome:
    """Result of one search, before rendering to the wire format."""

    kind: OutcomeKind
    remaining: int = 0
    message: str | None = None
    stories: list[ScoredStory] = field(default_factory=list)
    guidance: Guidance | None = None
    gate_reason: GateReason | None = None


class StoryService:
    """Coordinates the gate, quota, retrieval and ledger for each request."""

    def __init__(
        self,
        corpus: Corpus,
        embedder: EmbeddingService,
        ranker: SimilarityRanker,
        composer: GuidanceComposer,
        quota: QuotaGuard,
        ledger: EventLedger,
        gate: AdmissionGate,
        max_question_words: int = 25,
        record_server_questions: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.corpus = corpus
        self.embedder = embedder
        self.ranker = ranker
        self.composer = composer
        self.quota = quota
        self.ledger = ledger
        self.gate = gate
        self.max_question_words = max_question_words
        self.record_server_questions = record_server_questions
        self.rng = rng or random.Random()

        self._pending_writes: set[asyncio.Task[bool]] = set()

    def prepare_query(self, query: Query) -> Query:
        """Apply word bound and salutation stripping to the question."""
        question = prepare_question(query.question, self.max_question_words)
        return Query(
            question=question,
            topic=query.topic,
            fingerprint=query.fingerprint,
            origin=query.origin,
            language=query.language,
        )

    @traced("service.search")
    async def search(
        self,
        query: Query,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> SearchOutcome:
        """Run one retrieval request end to end.

        Args:
            query: Validated query
            headers: Request headers for the admission gate
            now: Current time (defaults to now, UTC)

        Returns:
            SearchOutcome

        Raises:
            EmbeddingDimensionError: If the embedding model and corpus disagree
        """
        started = time.perf_counter()
        now = now or datetime.now(UTC)
        try:
            outcome = await self._search(query, headers, now)
        finally:
            search_duration_seconds.observe(time.perf_counter() - started)

        search_requests_total.labels(outcome=outcome.kind.value).inc()
        add_span_attributes({"search.outcome": outcome.kind.value})
        return outcome

    async def _search(self, query: Query, headers: Mapping[str, str], now: datetime) -> SearchOutcome:
        decision: GateDecision = self.gate.evaluate(headers, query.fingerprint, now.timestamp())
        if not decision.allowed:
            return SearchOutcome(
                OutcomeKind.BOT_DETECTED,
                message=decision.message,
                gate_reason=decision.reason,
            )

        quota = await self.quota.check_and_consume(query.fingerprint, query.origin, now)
        if not quota.admitted:
            await self._record(
                LedgerEvent(
                    action=EventAction.RATE_LIMIT_HIT,
                    fingerprint=query.fingerprint,
                    timestamp=now,
                    topic=query.topic.value,
                    language=query.language.value,
                )
            )
            return SearchOutcome(OutcomeKind.RATE_LIMITED, remaining=0, message=RATE_LIMIT_MESSAGE)

        query = self.prepare_query(query)

        try:
            embedding = await self.embedder.generate_embedding(query.embedding_input)
        except EmbeddingServiceError as e:
            logger.error(f"❌ Retrieval unavailable: {e.message}")
            await self._record_question(query, now, OutcomeKind.UNAVAILABLE, 0)
            return SearchOutcome(
                OutcomeKind.UNAVAILABLE,
                remaining=quota.remaining,
                message=UNAVAILABLE_MESSAGE,
            )

        with trace_operation("rank_stories", {"corpus.size": str(len(self.corpus))}):
            result = self.ranker.rank(embedding, self.corpus)
        best_similarity_score.observe(max(0.0, result.best_score))

        if result.status is not RankStatus.MATCHED:
            await self._record_question(query, now, OutcomeKind.FALLBACK, 0)
            return SearchOutcome(
                OutcomeKind.FALLBACK,
                remaining=quota.remaining,
                message=FALLBACK_MESSAGE,
            )

        guidance = await self.composer.compose(query, result.stories, self.rng)
        await self._record_question(query, now, OutcomeKind.MATCHED, len(result.stories))
        return SearchOutcome(
            OutcomeKind.MATCHED,
            remaining=quota.remaining,
            stories=result.stories,
            guidance=guidance,
        )

    async def _record_question(
        self,
        query: Query,
        now: datetime,
        outcome: OutcomeKind,
        story_count: int,
    ) -> None:
        if not self.record_server_questions:
            return
        await self._record(
            LedgerEvent(
                action=EventAction.QUESTION_ASKED,
                fingerprint=query.fingerprint,
                timestamp=now,
                topic=query.topic.value,
                language=query.language.value,
                question_length=len(query.question),
                data={"outcome": outcome.value, "stories": story_count},
            )
        )

    async def _record(self, event: LedgerEvent) -> bool:
        """Record an event, surviving cancellation of the calling request."""
        task = asyncio.create_task(self._safe_record(event))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return await asyncio.shield(task)

    async def _safe_record(self, event: LedgerEvent) -> bool:
        try:
            return await self.ledger.record(event)
        except Exception:
            logger.exception(f"Unexpected failure recording {event.action.value} event")
            return False

    async def record_event(self, event: LedgerEvent) -> bool:
        """Record a client-submitted analytics event."""
        return await self._record(event)

    def remaining(self, fingerprint: str, origin: str | None, now: datetime | None = None) -> int:
        """Remaining allowance without consuming quota."""
        return self.quota.peek(fingerprint, origin, now)

    def verify_human(
        self,
        fingerprint: str,
        headers: Mapping[str, str],
        issued_at_ms: float,
        now: float | None = None,
    ) -> GateDecision:
        return self.gate.verify_challenge(fingerprint, headers, issued_at_ms, now)

    async def stats(self, start: str, end: str) -> StatsReport:
        return await self.ledger.aggregate(start, end)

    async def drain(self) -> None:
        """Wait for in-flight ledger writes."""
        if self._pending_writes:
            logger.info(f"Waiting for {len(self._pending_writes)} pending ledger writes")
            await asyncio.gather(*self._pending_writes, return_exceptions=True)
