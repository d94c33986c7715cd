"""Cosine-similarity ranking of corpus stories against a query embedding."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import numpy.typing as npt

from kripa.corpus import Corpus
from kripa.errors import EmbeddingDimensionError
from kripa.models import ScoredStory

logger = logging.getLogger(__name__)

Vector = Sequence[float] | npt.NDArray[np.floating]


class RankStatus(Enum):
    """Outcome of a ranking pass."""

    MATCHED = "matched"
    NO_MATCH = "no_match"  # corpus has stories, none reached the threshold
    EMPTY_CORPUS = "empty_corpus"


@dataclass
class RankResult:
    """Ranking outcome.

    Attributes:
        status: matched / no_match / empty_corpus
        stories: Thresholded top-K, best first (empty unless matched)
        best_score: Highest score over the whole corpus (0.0 when empty)
    """

    status: RankStatus
    stories: list[ScoredStory] = field(default_factory=list)
    best_score: float = 0.0

    @property
    def matched(self) -> bool:
        return self.status is RankStatus.MATCHED


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity of two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; exactly 0.0 when either vector has zero norm

    Raises:
        EmbeddingDimensionError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise EmbeddingDimensionError(
            f"Vectors must have the same length ({va.shape[0]} != {vb.shape[0]})"
        )

    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push parallel vectors a hair past 1
    return max(-1.0, min(1.0, similarity))


def score_corpus(query_embedding: Vector, corpus: Corpus) -> npt.NDArray[np.float64]:
    """Score every corpus record against the query.

    Records without an embedding are zero rows and score exactly 0.

    Args:
        query_embedding: Query vector
        corpus: Loaded corpus

    Returns:
        Scores aligned with ``corpus.records``

    Raises:
        EmbeddingDimensionError: If the query and corpus dimensions differ
    """
    query = np.asarray(query_embedding, dtype=np.float64)
    scores = np.zeros(len(corpus), dtype=np.float64)
    if corpus.matrix is None:
        return scores

    if query.ndim != 1 or query.shape[0] != corpus.dimension:
        raise EmbeddingDimensionError(
            f"Query embedding has dimension {query.shape[-1] if query.ndim else 0}, "
            f"corpus expects {corpus.dimension}",
            {"query_dim": int(query.shape[-1]) if query.ndim else 0, "corpus_dim": corpus.dimension},
        )

    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0:
        return scores

    matrix = corpus.matrix.astype(np.float64)
    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    nonzero = row_norms > 0
    scores[nonzero] = dots[nonzero] / (row_norms[nonzero] * query_norm)
    return np.clip(scores, -1.0, 1.0)


class SimilarityRanker:
    """Thresholded, stable top-K ranking.

    Threshold and K are fixed at construction from configuration.
    """

    def __init__(self, threshold: float = 0.30, top_k: int = 3) -> None:
        """Initialize ranker.

        Args:
            threshold: Minimum similarity for a story to be returned
            top_k: Maximum number of stories returned
        """
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        self.threshold = threshold
        self.top_k = top_k

    def rank(self, query_embedding: Vector, corpus: Corpus) -> RankResult:
        """Rank corpus stories against a query embedding.

        Args:
            query_embedding: Query vector from the embedding service
            corpus: Loaded corpus

        Returns:
            RankResult; ties keep corpus insertion order

        Raises:
            EmbeddingDimensionError: If the query and corpus dimensions differ
        """
        if len(corpus) == 0:
            return RankResult(RankStatus.EMPTY_CORPUS)

        scores = score_corpus(query_embedding, corpus)
        best_score = float(scores.max())

        # Stable sort on the negated scores keeps insertion order for ties
        order = np.argsort(-scores, kind="stable")
        selected = [
            ScoredStory(story=corpus.records[int(i)], score=float(scores[i]))
            for i in order
            if scores[i] >= self.threshold
        ][: self.top_k]

        if not selected:
            logger.info(
                f"No stories above {self.threshold:.2f} threshold. Best score: {best_score:.3f}"
            )
            return RankResult(RankStatus.NO_MATCH, best_score=best_score)

        logger.debug(
            "Top matches: "
            + ", ".join(f"{s.story.id}={s.score:.3f}" for s in selected)
        )
        return RankResult(RankStatus.MATCHED, stories=selected, best_score=best_score)
