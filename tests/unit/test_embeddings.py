"""Tests for embedding service."""

from __future__ import annotations

import httpx
import numpy as np
import pytest

from kripa.config import EmbeddingConfig
from kripa.errors import EmbeddingServiceError
from kripa.processing.embeddings import EmbeddingService
from kripa.resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState


def make_service(handler, breaker: CircuitBreaker | None = None) -> EmbeddingService:
    client = httpx.AsyncClient(
        base_url="https://embeddings.test/v1",
        transport=httpx.MockTransport(handler),
    )
    return EmbeddingService(
        EmbeddingConfig(provider="openai", api_key="sk-test", base_url="https://embeddings.test/v1"),
        client=client,
        breaker=breaker,
    )


class TestHashProvider:
    """Test suite for the deterministic development provider."""

    @pytest.fixture
    def service(self) -> EmbeddingService:
        return EmbeddingService(EmbeddingConfig(provider="hash", dimensions=64))

    @pytest.mark.asyncio
    async def test_shape_and_norm(self, service: EmbeddingService) -> None:
        embedding = await service.generate_embedding("my father passed away Grief/Loss")

        assert isinstance(embedding, np.ndarray)
        assert embedding.shape == (64,)
        assert embedding.dtype == np.float32
        assert abs(np.linalg.norm(embedding) - 1.0) < 0.01

    @pytest.mark.asyncio
    async def test_deterministic(self, service: EmbeddingService) -> None:
        a = await service.generate_embedding("same text")
        b = await service.generate_embedding("same text")
        c = await service.generate_embedding("other text")

        np.testing.assert_array_equal(a, b)
        assert not np.array_equal(a, c)

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValueError):
            EmbeddingConfig(provider="word2vec")


class TestHttpProvider:
    """Test suite for the OpenAI-compatible HTTP provider."""

    @pytest.mark.asyncio
    async def test_successful_request(self) -> None:
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        service = make_service(handler)

        embedding = await service.generate_embedding("I lost my job Work/Finances")

        assert seen["path"] == "/v1/embeddings"
        assert b"text-embedding-3-large" in seen["body"]  # type: ignore[operator]
        np.testing.assert_allclose(embedding, [0.1, 0.2, 0.3], rtol=1e-6)
        await service.close()

    @pytest.mark.asyncio
    async def test_server_error_maps_to_service_error(self) -> None:
        service = make_service(lambda request: httpx.Response(500, json={"error": "boom"}))

        with pytest.raises(EmbeddingServiceError):
            await service.generate_embedding("text")

    @pytest.mark.asyncio
    async def test_malformed_response(self) -> None:
        service = make_service(lambda request: httpx.Response(200, json={"data": []}))

        with pytest.raises(EmbeddingServiceError):
            await service.generate_embedding("text")

    @pytest.mark.asyncio
    async def test_non_json_response(self) -> None:
        service = make_service(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(EmbeddingServiceError):
            await service.generate_embedding("text")

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_quickly(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        breaker = CircuitBreaker("embeddings-test", CircuitBreakerConfig(failure_threshold=2, timeout=60.0))
        service = make_service(handler, breaker)

        for _ in range(2):
            with pytest.raises(EmbeddingServiceError):
                await service.generate_embedding("text")
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(EmbeddingServiceError, match="temporarily unavailable"):
            await service.generate_embedding("text")
        assert calls == 2
