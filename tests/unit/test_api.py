"""Tests for the HTTP API."""

from __future__ import annotations

import json
import random
import time
from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest

from kripa.api import create_app
from kripa.config import KripaConfig
from kripa.corpus import Corpus
from kripa.errors import EmbeddingServiceError
from kripa.main import KripaApplication

ADMIN = {"Authorization": "Bearer test-admin-token"}


class KeywordEmbedder:
    """Embedding stub keyed on words in the question."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def generate_embedding(self, text: str) -> np.ndarray:
        if "outage" in text:
            raise EmbeddingServiceError("Embedding request failed: ConnectError")
        if "job" in text:
            return np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)
        return np.zeros(4, dtype=np.float32)


@pytest.fixture
async def application(kripa_config: KripaConfig, small_corpus: Corpus) -> AsyncIterator[KripaApplication]:
    application = KripaApplication(
        kripa_config,
        corpus=small_corpus,
        embedder=KeywordEmbedder(),  # type: ignore[arg-type]
        rng=random.Random(0),
    )
    await application.start()
    yield application
    await application.stop()


@pytest.fixture
async def client(
    kripa_config: KripaConfig,
    application: KripaApplication,
    browser_headers: dict[str, str],
) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(kripa_config, application)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
        headers=browser_headers,
    ) as client:
        yield client


async def verify(client: httpx.AsyncClient, fingerprint: str = "F1") -> None:
    response = await client.post(
        "/api/verify-human",
        json={"fingerprint": fingerprint, "timestamp": time.time() * 1000},
    )
    assert response.status_code == 200


def search_body(question: str = "I lost my job", **overrides: str) -> dict[str, str]:
    return {"question": question, "topic": "Work/Finances", "fingerprint": "F1", **overrides}


class TestVerifyHuman:
    @pytest.mark.asyncio
    async def test_fresh_timestamp_verifies(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/verify-human",
            json={"fingerprint": "F1", "timestamp": time.time() * 1000},
        )

        assert response.status_code == 200
        assert response.json() == {"verified": True, "message": "Human verification successful"}

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/verify-human", json={"fingerprint": "F1", "timestamp": 0})

        assert response.status_code == 403
        assert response.json() == {"verified": False, "error": "Invalid timestamp"}


class TestSearchStories:
    """Test suite for POST /api/search-stories."""

    @pytest.mark.asyncio
    async def test_matched_response_shape(self, client: httpx.AsyncClient) -> None:
        await verify(client)

        response = await client.post("/api/search-stories", json=search_body())

        assert response.status_code == 200
        data = response.json()
        assert [story["id"] for story in data["stories"]] == ["a"]
        assert data["stories"][0]["source_url"] == "Miracle of Love, Ram Dass"
        assert "score" not in data["stories"][0]
        assert data["remaining"] == 2
        for key in ("empathy", "lessons", "reflection", "community", "practice", "nextSteps", "gratitude"):
            assert data[key]

    @pytest.mark.asyncio
    async def test_no_match_is_fallback(self, client: httpx.AsyncClient) -> None:
        await verify(client)

        response = await client.post("/api/search-stories", json=search_body("hello there"))

        assert response.status_code == 200
        data = response.json()
        assert data["fallback"] is True
        assert data["remaining"] == 2
        assert "stories" not in data

    @pytest.mark.asyncio
    async def test_fourth_request_rate_limited(self, client: httpx.AsyncClient) -> None:
        await verify(client)

        statuses = []
        for _ in range(4):
            response = await client.post("/api/search-stories", json=search_body())
            statuses.append(response.status_code)

        assert statuses == [200, 200, 200, 429]
        assert response.json()["error"] == "rate_limit"
        assert response.json()["remaining"] == 0

    @pytest.mark.asyncio
    async def test_unverified_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/search-stories", json=search_body())

        assert response.status_code == 403
        assert response.json()["message"] == "Please complete human verification before searching"

    @pytest.mark.asyncio
    async def test_bot_rejected_without_consuming_quota(self, client: httpx.AsyncClient) -> None:
        await verify(client)

        response = await client.post(
            "/api/search-stories",
            json=search_body(),
            headers={"user-agent": "Googlebot/2.1"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "bot_detected"
        remaining = await client.post("/api/analytics", json={"action": "check_limit", "fingerprint": "F1"})
        assert remaining.json() == {"remaining": 3}

    @pytest.mark.asyncio
    async def test_invalid_topic(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/search-stories", json=search_body(topic="Astrology"))

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_blank_question(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/search-stories", json=search_body("   "))

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_embedding_outage_is_503(self, client: httpx.AsyncClient) -> None:
        await verify(client)

        response = await client.post("/api/search-stories", json=search_body("job outage"))

        assert response.status_code == 503
        assert response.json()["error"] == "retrieval_unavailable"


class TestAnalytics:
    """Test suite for POST /api/analytics."""

    @pytest.mark.asyncio
    async def test_check_limit_does_not_consume(self, client: httpx.AsyncClient) -> None:
        for _ in range(2):
            response = await client.post("/api/analytics", json={"action": "check_limit", "fingerprint": "F9"})
            assert response.json() == {"remaining": 3}

    @pytest.mark.asyncio
    async def test_event_recorded_with_extra_fields(
        self, client: httpx.AsyncClient, kripa_config: KripaConfig
    ) -> None:
        response = await client.post(
            "/api/analytics",
            json={
                "action": "page_view",
                "fingerprint": "F1",
                "sessionId": "s-1",
                "timestamp": 1700000000000,
                "page": "/",
                "referrer": "newsletter",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}

        assert kripa_config.ledger.analytics_dir is not None
        [shard_file] = kripa_config.ledger.analytics_dir.glob("*.json")
        shard = json.loads(shard_file.read_text())
        [entry] = shard["page_views"]
        assert entry["session_id"] == "s-1"
        assert entry["data"] == {"referrer": "newsletter", "client_timestamp": 1700000000000}

    @pytest.mark.asyncio
    async def test_invalid_action(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/analytics", json={"action": "delete_everything", "fingerprint": "F1"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid action"


class TestStats:
    """Test suite for GET /api/stats."""

    @pytest.mark.asyncio
    async def test_requires_admin_token(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/stats")).status_code == 401
        assert (await client.get("/api/stats", headers={"Authorization": "Bearer wrong"})).status_code == 401

    @pytest.mark.asyncio
    async def test_reports_server_recorded_questions(self, client: httpx.AsyncClient) -> None:
        await verify(client)
        await client.post("/api/search-stories", json=search_body())
        await client.post("/api/search-stories", json=search_body("hello"))

        response = await client.get("/api/stats", headers=ADMIN)

        assert response.status_code == 200
        report = response.json()
        assert report["totals"]["questions"] == 2
        assert report["topic_distribution"] == {"Work/Finances": 2}

    @pytest.mark.asyncio
    async def test_invalid_range(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/stats", params={"start": "2026-03-02", "end": "2026-03-01"}, headers=ADMIN)

        assert response.status_code == 400


class TestHealthAndMetrics:
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["stories"] == 5

    @pytest.mark.asyncio
    async def test_metrics_exposition(self, client: httpx.AsyncClient) -> None:
        await verify(client)
        await client.post("/api/search-stories", json=search_body())

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "kripa_search_requests_total" in response.text
