"""Tests for guidance tables and composition."""

from __future__ import annotations

import json
import random
from typing import Any

import httpx
import pytest

from kripa.config import CompletionConfig
from kripa.errors import CompletionServiceError
from kripa.models import Language, Query, ScoredStory, Topic
from kripa.processing.guidance import (
    GLOBAL_TABLES,
    TOPIC_TABLES,
    CompletionClient,
    GuidanceComposer,
    canned_guidance,
    pick,
)
from tests.conftest import make_story


class FakeCompletion:
    """Completion client returning queued replies or raising."""

    def __init__(self, *replies: dict[str, Any] | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    async def complete_json(self, system: str, user: str) -> dict[str, Any]:
        self.calls.append((system, user))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_query(language: Language = Language.ENGLISH) -> Query:
    return Query(
        question="my mother is ill",
        topic=Topic.HEALTH,
        fingerprint="F1",
        origin="O1",
        language=language,
    )


STORIES = [ScoredStory(make_story("a"), 0.8)]


class TestPick:
    """Test suite for canned line selection."""

    def test_seeded_pick_is_reproducible(self) -> None:
        first = [pick("practice", Topic.GRIEF, random.Random(7)) for _ in range(3)]
        second = [pick("practice", Topic.GRIEF, random.Random(7)) for _ in range(3)]

        assert first == second

    def test_topic_selects_table(self) -> None:
        line = pick("reflection", Topic.WORK, random.Random(1))

        assert line in TOPIC_TABLES["reflection"]["work"]

    def test_label_and_key_accepted(self) -> None:
        assert pick("practice", "Grief/Loss", random.Random(3)) in TOPIC_TABLES["practice"]["grief"]
        assert pick("practice", "faith", random.Random(3)) in TOPIC_TABLES["practice"]["faith"]

    def test_unknown_topic_uses_other(self) -> None:
        assert pick("next_steps", "astrology", random.Random(0)) in TOPIC_TABLES["next_steps"]["other"]

    def test_community_count_filled(self) -> None:
        rng = random.Random(0)
        lines = {pick("community", None, rng) for _ in range(50)}

        assert all("{count}" not in line for line in lines)
        assert any("devotees who have found comfort" in line for line in lines)

    def test_global_category_ignores_topic(self) -> None:
        assert pick("gratitude", Topic.WORK, random.Random(2)) in GLOBAL_TABLES["gratitude"]

    def test_unknown_category(self) -> None:
        with pytest.raises(KeyError):
            pick("horoscope", Topic.OTHER, random.Random(0))


class TestGuidanceComposer:
    """Test suite for GuidanceComposer."""

    @pytest.mark.asyncio
    async def test_canned_only_without_completion(self) -> None:
        composer = GuidanceComposer()

        guidance = await composer.compose(make_query(), STORIES, random.Random(5))

        assert guidance == canned_guidance(Topic.HEALTH, random.Random(5))
        assert guidance.relevance is None

    @pytest.mark.asyncio
    async def test_enrichment_overlays_generated_text(self) -> None:
        completion = FakeCompletion(
            {
                "empathy": "Caring for a parent is hard.",
                "lessons": ["Serve without fear.", "  "],
                "relevance": "This story is about a sick devotee.",
            }
        )
        composer = GuidanceComposer(completion)  # type: ignore[arg-type]

        guidance = await composer.compose(make_query(), STORIES, random.Random(5))

        assert guidance.empathy == "Caring for a parent is hard."
        assert guidance.lessons == ["Serve without fear."]
        assert guidance.relevance == "This story is about a sick devotee."
        assert guidance.practice in TOPIC_TABLES["practice"]["health"]
        assert "Story a" in completion.calls[0][1]

    @pytest.mark.asyncio
    async def test_ill_typed_values_ignored(self) -> None:
        completion = FakeCompletion({"empathy": 42, "lessons": "not a list"})
        composer = GuidanceComposer(completion)  # type: ignore[arg-type]

        guidance = await composer.compose(make_query(), STORIES, random.Random(5))

        assert guidance == canned_guidance(Topic.HEALTH, random.Random(5))

    @pytest.mark.asyncio
    async def test_failure_falls_back_to_canned(self) -> None:
        completion = FakeCompletion(CompletionServiceError("down"))
        composer = GuidanceComposer(completion)  # type: ignore[arg-type]

        guidance = await composer.compose(make_query(), STORIES, random.Random(5))

        assert guidance == canned_guidance(Topic.HEALTH, random.Random(5))

    @pytest.mark.asyncio
    async def test_hindi_is_translated(self) -> None:
        completion = FakeCompletion(
            {"empathy": "English empathy"},
            {"empathy": "हिंदी सहानुभूति", "gratitude": "धन्यवाद"},
        )
        composer = GuidanceComposer(completion)  # type: ignore[arg-type]

        guidance = await composer.compose(make_query(Language.HINDI), STORIES, random.Random(5))

        assert guidance.empathy == "हिंदी सहानुभूति"
        assert guidance.gratitude == "धन्यवाद"
        assert "Hindi" in completion.calls[1][0]

    @pytest.mark.asyncio
    async def test_failed_translation_keeps_english(self) -> None:
        completion = FakeCompletion({"empathy": "English empathy"}, CompletionServiceError("down"))
        composer = GuidanceComposer(completion)  # type: ignore[arg-type]

        guidance = await composer.compose(make_query(Language.HINDI), STORIES, random.Random(5))

        assert guidance.empathy == "English empathy"


class TestCompletionClient:
    """Test suite for the HTTP completion client."""

    def make_client(self, handler) -> CompletionClient:
        http = httpx.AsyncClient(base_url="https://llm.test/v1", transport=httpx.MockTransport(handler))
        return CompletionClient(CompletionConfig(enabled=True, api_key="sk-test"), client=http)

    @pytest.mark.asyncio
    async def test_returns_parsed_object(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.read())
            assert body["response_format"] == {"type": "json_object"}
            return httpx.Response(
                200, json={"choices": [{"message": {"content": json.dumps({"empathy": "hi"})}}]}
            )

        client = self.make_client(handler)

        assert await client.complete_json("system", "user") == {"empathy": "hi"}

    @pytest.mark.asyncio
    async def test_non_object_content_rejected(self) -> None:
        client = self.make_client(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "[1, 2]"}}]})
        )

        with pytest.raises(CompletionServiceError):
            await client.complete_json("system", "user")

    @pytest.mark.asyncio
    async def test_http_error_mapped(self) -> None:
        client = self.make_client(lambda request: httpx.Response(502))

        with pytest.raises(CompletionServiceError):
            await client.complete_json("system", "user")
