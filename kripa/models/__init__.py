"""Kripa domain models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Topic(str, Enum):
    """Topic labels offered by the question form."""

    WORK = "Work/Finances"
    RELATIONSHIPS = "Relationships/Family"
    HEALTH = "Health/Body"
    GRIEF = "Grief/Loss"
    FAITH = "Faith/Practice"
    OTHER = "Other"

    @property
    def category(self) -> str:
        """Short key used by the guidance tables (work, relationships, ...)."""
        return _TOPIC_CATEGORIES[self]


_TOPIC_CATEGORIES = {
    Topic.WORK: "work",
    Topic.RELATIONSHIPS: "relationships",
    Topic.HEALTH: "health",
    Topic.GRIEF: "grief",
    Topic.FAITH: "faith",
    Topic.OTHER: "other",
}


class Language(str, Enum):
    """Response languages."""

    ENGLISH = "en"
    HINDI = "hi"


class StoryRecord(BaseModel):
    """Immutable corpus entry.

    ``embedding`` is empty for records loaded from the un-embedded corpus;
    such records always score 0.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str
    content: str
    source: str
    tags: tuple[str, ...] = ()
    embedding: tuple[float, ...] = Field(default=(), repr=False)
    situations: tuple[str, ...] = ()
    emotions: tuple[str, ...] = ()

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0


@dataclass(frozen=True)
class Query:
    """One retrieval request, alive for the duration of the request."""

    question: str
    topic: Topic
    fingerprint: str
    origin: str
    language: Language = Language.ENGLISH

    @property
    def embedding_input(self) -> str:
        """Text sent to the embedding service."""
        return f"{self.question} {self.topic.value}"


@dataclass(frozen=True)
class ScoredStory:
    """A story with its cosine similarity to the query (internal only)."""

    story: StoryRecord
    score: float


__all__ = [
    "Language",
    "Query",
    "ScoredStory",
    "StoryRecord",
    "Topic",
]
