"""Pytest configuration and fixtures for Kripa tests."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from kripa.config import (
    EmbeddingConfig,
    GateConfig,
    KripaConfig,
    LedgerConfig,
    QuotaConfig,
    RetrievalConfig,
)
from kripa.corpus import Corpus
from kripa.models import StoryRecord


@pytest.fixture(scope="session", autouse=True)
def setup_telemetry():
    """Setup OpenTelemetry for all tests.

    The session scope means this runs once for all tests, which is
    more efficient and avoids event loop conflicts.
    """
    from kripa.observability.tracing import setup_telemetry

    setup_telemetry(service_name="kripa-test", enable_console_export=False)

    yield


def make_story(
    story_id: str,
    embedding: Sequence[float] = (),
    title: str | None = None,
    source: str = "Miracle of Love, Ram Dass",
) -> StoryRecord:
    """Build a story record for tests."""
    return StoryRecord(
        id=story_id,
        title=title or f"Story {story_id}",
        content=f"Content of story {story_id}",
        source=source,
        tags=("faith",),
        embedding=tuple(embedding),
    )


@pytest.fixture
def browser_headers() -> dict[str, str]:
    """Headers of an ordinary interactive browser."""
    return {
        "user-agent": "Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101 Firefox/125.0",
        "accept": "application/json",
        "accept-language": "en-US,en;q=0.9",
    }


@pytest.fixture
def small_corpus() -> Corpus:
    """Five stories on the unit axes of a 4-dimensional space."""
    return Corpus.from_records(
        [
            make_story("a", [1.0, 0.0, 0.0, 0.0]),
            make_story("b", [0.0, 1.0, 0.0, 0.0]),
            make_story("c", [0.0, 0.0, 1.0, 0.0]),
            make_story("d", [0.0, 0.0, 0.0, 1.0]),
            make_story("e", [-1.0, 0.0, 0.0, 0.0]),
        ],
        strategy="test",
    )


@pytest.fixture
def kripa_config(tmp_path: Path) -> KripaConfig:
    """Configuration with every store under tmp_path."""
    return KripaConfig(
        retrieval=RetrievalConfig(corpus_dir=tmp_path / "corpus"),
        embedding=EmbeddingConfig(provider="hash", dimensions=4),
        quota=QuotaConfig(store_path=tmp_path / "quota" / "counters.json"),
        ledger=LedgerConfig(analytics_dir=tmp_path / "analytics"),
        gate=GateConfig(),
        admin_token="test-admin-token",
        metrics_enabled=False,
    )
