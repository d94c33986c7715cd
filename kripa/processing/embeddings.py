"""Embedding service client.

The embedding model is an external black box. Two providers exist:

- ``openai``: OpenAI-compatible ``/embeddings`` HTTP API (production)
- ``hash``: deterministic, non-semantic vectors derived from a text digest,
  for local development and tests without network access

Unlike guidance text, an embedding has no canned substitute: if the service
cannot produce one, ``EmbeddingServiceError`` is raised and the caller reports
a retrieval failure.
"""

from __future__ import annotations

import hashlib
import logging
import random
from typing import Any

import httpx
import numpy as np
import numpy.typing as npt

from kripa.config import EmbeddingConfig
from kripa.errors import EmbeddingServiceError
from kripa.observability import record_histogram, traced
from kripa.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerError

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Query embedding generation.

    Attributes:
        config: Embedding configuration
        breaker: Circuit breaker guarding the HTTP provider
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        """Initialize embedding service.

        Args:
            config: Embedding configuration
            client: Optional pre-built HTTP client (owned by the caller)
            breaker: Optional circuit breaker (one is created otherwise)
        """
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.breaker = breaker or CircuitBreaker(
            "embeddings",
            CircuitBreakerConfig(call_timeout=config.timeout_seconds),
        )

        logger.info(f"Embedding service created: provider={config.provider} model={config.model}")

    @property
    def provider(self) -> str:
        return self.config.provider

    async def initialize(self) -> None:
        """Create the HTTP client for the remote provider."""
        if self.config.provider != "openai" or self._client is not None:
            return

        if not self.config.api_key:
            logger.warning("⚠️ No embedding API key configured; searches will fail until one is set")

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @traced("embeddings.generate")
    async def generate_embedding(self, text: str) -> npt.NDArray[np.float32]:
        """Generate embedding for a single text.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector (float32)

        Raises:
            EmbeddingServiceError: If no embedding could be produced
        """
        if self.config.provider == "hash":
            return self._generate_hash_embedding(text)

        if self._client is None:
            await self.initialize()

        try:
            embedding = await self.breaker.call(self._request_embedding, text)
        except CircuitBreakerError as e:
            raise EmbeddingServiceError("Embedding service temporarily unavailable") from e
        except TimeoutError as e:
            raise EmbeddingServiceError("Embedding service timed out") from e
        except httpx.HTTPError as e:
            raise EmbeddingServiceError(f"Embedding request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise EmbeddingServiceError("Malformed embedding response") from e

        record_histogram("embeddings.dimension", float(embedding.shape[0]))
        return embedding

    async def _request_embedding(self, text: str) -> npt.NDArray[np.float32]:
        assert self._client is not None
        response = await self._client.post(
            "/embeddings",
            json={"model": self.config.model, "input": text},
        )
        response.raise_for_status()
        payload: dict[str, Any] = response.json()

        try:
            vector = payload["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingServiceError("Malformed embedding response") from e

        return np.asarray(vector, dtype=np.float32)

    def _generate_hash_embedding(self, text: str) -> npt.NDArray[np.float32]:
        """Generate a deterministic, non-semantic embedding.

        Creates a stable vector from a SHA-256 digest of the text so identical
        inputs always produce identical embeddings across processes.

        Args:
            text: Input text

        Returns:
            L2-normalised vector of ``config.dimensions`` floats
        """
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        local_random = random.Random(seed)

        embedding = np.array(
            [local_random.gauss(0, 1) for _ in range(self.config.dimensions)],
            dtype=np.float32,
        )

        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = (embedding / norm).astype(np.float32)

        return embedding
