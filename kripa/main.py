"""Kripa application wiring and lifecycle."""

from __future__ import annotations

import logging
import random
from typing import Any

from kripa.config import KripaConfig
from kripa.corpus import Corpus, CorpusLoader
from kripa.errors import QuotaStoreError
from kripa.gate import AdmissionGate
from kripa.ledger import EventLedger, ShardStore
from kripa.observability.metrics import corpus_records
from kripa.processing.embeddings import EmbeddingService
from kripa.processing.guidance import CompletionClient, GuidanceComposer
from kripa.processing.ranking import SimilarityRanker
from kripa.quota import QuotaGuard
from kripa.resilience import CircuitBreakerConfig, CircuitBreakerRegistry
from kripa.service import StoryService

logger = logging.getLogger(__name__)


class KripaApplication:
    """Builds the service graph at startup and tears it down at shutdown.

    Attributes:
        config: Application configuration
        breakers: Circuit breakers of the external services
        service: Story service (available after ``start``)
    """

    def __init__(
        self,
        config: KripaConfig,
        corpus: Corpus | None = None,
        embedder: EmbeddingService | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize application.

        Args:
            config: Application configuration
            corpus: Pre-built corpus (loaded from ``config.retrieval`` otherwise)
            embedder: Pre-built embedding service
            rng: Random source for guidance selection
        """
        self.config = config
        self.breakers = CircuitBreakerRegistry()
        self._corpus = corpus
        self._embedder = embedder
        self._completion: CompletionClient | None = None
        self._rng = rng
        self._service: StoryService | None = None

    @property
    def service(self) -> StoryService:
        if self._service is None:
            raise RuntimeError("Application not started")
        return self._service

    @property
    def started(self) -> bool:
        return self._service is not None

    async def start(self) -> StoryService:
        """Load the corpus and quota store and build the service.

        Raises:
            CorpusUnavailableError: If no corpus artifact could be loaded
        """
        logger.info("Starting Kripa application")
        cfg = self.config

        corpus = self._corpus
        if corpus is None:
            assert cfg.retrieval.corpus_dir is not None
            corpus = CorpusLoader.from_directory(
                cfg.retrieval.corpus_dir,
                cfg.retrieval.embedded_corpus_file,
                cfg.retrieval.plain_corpus_file,
                cfg.retrieval.default_source,
            ).load()
        corpus_records.labels(strategy=corpus.strategy).set(len(corpus))

        embedder = self._embedder or EmbeddingService(
            cfg.embedding,
            breaker=self.breakers.get_or_create_breaker(
                "embeddings",
                CircuitBreakerConfig(call_timeout=cfg.embedding.timeout_seconds),
            ),
        )
        await embedder.initialize()
        self._embedder = embedder

        if cfg.completion.enabled:
            self._completion = CompletionClient(
                cfg.completion,
                breaker=self.breakers.get_or_create_breaker(
                    "completions",
                    CircuitBreakerConfig(call_timeout=cfg.completion.timeout_seconds),
                ),
            )

        assert cfg.quota.store_path is not None
        quota = QuotaGuard(
            cfg.quota.store_path,
            daily_cap=cfg.quota.daily_cap,
            utc_offset_minutes=cfg.quota.utc_offset_minutes,
            gc_interval_seconds=cfg.quota.gc_interval_seconds,
        )
        await quota.load()

        assert cfg.ledger.analytics_dir is not None
        cfg.ledger.analytics_dir.mkdir(parents=True, exist_ok=True)
        ledger = EventLedger(
            ShardStore(cfg.ledger.analytics_dir),
            shard_size_ceiling_bytes=cfg.ledger.shard_size_ceiling_bytes,
            session_window_minutes=cfg.ledger.session_window_minutes,
        )

        self._service = StoryService(
            corpus=corpus,
            embedder=embedder,
            ranker=SimilarityRanker(cfg.retrieval.similarity_threshold, cfg.retrieval.top_k),
            composer=GuidanceComposer(self._completion),
            quota=quota,
            ledger=ledger,
            gate=AdmissionGate(cfg.gate),
            max_question_words=cfg.retrieval.max_question_words,
            record_server_questions=cfg.ledger.record_server_questions,
            rng=self._rng,
        )

        logger.info("✅ Kripa application started successfully")
        logger.info(f"   Stories: {len(corpus)} via {corpus.strategy}")
        logger.info(f"   Embeddings: {cfg.embedding.provider} ({cfg.embedding.model})")
        logger.info(f"   Completion: {'enabled' if self._completion else 'disabled'}")
        logger.info(f"   Daily cap: {cfg.quota.daily_cap}")
        return self._service

    async def stop(self) -> None:
        """Drain ledger writes, flush the quota store and close clients."""
        logger.info("Initiating graceful shutdown")

        if self._service is not None:
            await self._service.drain()
            try:
                await self._service.quota.flush()
            except QuotaStoreError as e:
                logger.error(f"❌ Failed to flush quota store on shutdown: {e.message}")

        if self._embedder is not None:
            await self._embedder.close()
        if self._completion is not None:
            await self._completion.close()

        self._service = None
        logger.info("✅ Kripa application shutdown complete")

    def health(self) -> dict[str, Any]:
        """Health summary for the health endpoint."""
        service = self._service
        return {
            "status": "healthy" if service is not None else "starting",
            "stories": len(service.corpus) if service else 0,
            "corpus_strategy": service.corpus.strategy if service else None,
            "circuit_breakers": self.breakers.get_all_stats(),
        }
