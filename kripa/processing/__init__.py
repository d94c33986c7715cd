"""Retrieval processing: question preparation, embeddings, ranking and guidance."""

from kripa.processing.embeddings import EmbeddingService
from kripa.processing.guidance import CompletionClient, Guidance, GuidanceComposer, pick
from kripa.processing.question import clean_question, prepare_question, truncate_words
from kripa.processing.ranking import (
    RankResult,
    RankStatus,
    SimilarityRanker,
    cosine_similarity,
    score_corpus,
)

__all__ = [
    "CompletionClient",
    "EmbeddingService",
    "Guidance",
    "GuidanceComposer",
    "RankResult",
    "RankStatus",
    "SimilarityRanker",
    "clean_question",
    "cosine_similarity",
    "pick",
    "prepare_question",
    "score_corpus",
    "truncate_words",
]
