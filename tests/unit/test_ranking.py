"""Tests for cosine similarity and the similarity ranker."""

from __future__ import annotations

import math

import numpy as np
import pytest

from kripa.corpus import Corpus
from kripa.errors import EmbeddingDimensionError
from kripa.processing.ranking import (
    RankStatus,
    SimilarityRanker,
    cosine_similarity,
    score_corpus,
)
from tests.conftest import make_story


class TestCosineSimilarity:
    """Test suite for cosine_similarity."""

    def test_identical_vectors(self) -> None:
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_opposite_vectors(self) -> None:
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric(self) -> None:
        rng = np.random.default_rng(7)
        for _ in range(20):
            a = rng.normal(size=8)
            b = rng.normal(size=8)
            assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_bounded(self) -> None:
        rng = np.random.default_rng(11)
        for _ in range(50):
            a = rng.normal(size=16) * 1000
            b = a * 3.5  # parallel, rounding could exceed 1
            assert -1.0 <= cosine_similarity(a, b) <= 1.0
            assert -1.0 <= cosine_similarity(a, rng.normal(size=16)) <= 1.0

    def test_zero_vector_scores_exactly_zero(self) -> None:
        assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0
        assert cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0

    def test_dimension_mismatch_fails_fast(self) -> None:
        with pytest.raises(EmbeddingDimensionError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])

    def test_magnitude_independent(self) -> None:
        assert cosine_similarity([1.0, 1.0], [10.0, 10.0]) == pytest.approx(1.0)


class TestScoreCorpus:
    """Test suite for vectorised corpus scoring."""

    def test_matches_pairwise_cosine(self, small_corpus: Corpus) -> None:
        query = [0.5, 0.2, -0.1, 0.7]
        scores = score_corpus(query, small_corpus)

        for record, score in zip(small_corpus.records, scores, strict=True):
            assert score == pytest.approx(cosine_similarity(query, record.embedding))

    def test_records_without_embedding_score_zero(self) -> None:
        corpus = Corpus.from_records([make_story("x", [1.0, 0.0]), make_story("y")])

        scores = score_corpus([1.0, 0.0], corpus)

        assert scores[0] == pytest.approx(1.0)
        assert scores[1] == 0.0

    def test_unembedded_corpus_scores_zero(self) -> None:
        corpus = Corpus.from_records([make_story("x"), make_story("y")])

        scores = score_corpus([1.0, 0.0, 0.0], corpus)

        assert list(scores) == [0.0, 0.0]

    def test_zero_query_scores_zero(self, small_corpus: Corpus) -> None:
        scores = score_corpus([0.0, 0.0, 0.0, 0.0], small_corpus)
        assert not scores.any()

    def test_dimension_mismatch(self, small_corpus: Corpus) -> None:
        with pytest.raises(EmbeddingDimensionError):
            score_corpus([1.0, 0.0], small_corpus)


class TestSimilarityRanker:
    """Test suite for SimilarityRanker."""

    def test_defaults(self) -> None:
        ranker = SimilarityRanker()
        assert ranker.threshold == 0.30
        assert ranker.top_k == 3

    def test_invalid_top_k(self) -> None:
        with pytest.raises(ValueError):
            SimilarityRanker(top_k=0)

    def test_two_of_five_above_threshold(self) -> None:
        """Only the two stories above 0.30 come back, best first."""
        corpus = Corpus.from_records(
            [
                make_story("s1", [0.1, 1.0, 0.0]),  # ~0.10
                make_story("s2", [1.0, 0.3, 0.0]),  # ~0.96
                make_story("s3", [0.0, 0.0, 1.0]),  # 0.0
                make_story("s4", [1.0, 1.2, 0.0]),  # ~0.64
                make_story("s5", [-1.0, 0.0, 0.0]),  # -1.0
            ]
        )

        result = SimilarityRanker(threshold=0.30, top_k=3).rank([1.0, 0.0, 0.0], corpus)

        assert result.status is RankStatus.MATCHED
        assert [s.story.id for s in result.stories] == ["s2", "s4"]
        assert result.stories[0].score > result.stories[1].score

    def test_no_story_above_threshold_is_no_match(self, small_corpus: Corpus) -> None:
        query = [1.0, 1.0, 1.0, 1.0]  # 0.5 against each axis

        result = SimilarityRanker(threshold=0.9).rank(query, small_corpus)

        assert result.status is RankStatus.NO_MATCH
        assert not result.matched
        assert result.stories == []
        assert result.best_score == pytest.approx(0.5)

    def test_empty_corpus_is_distinct_outcome(self) -> None:
        result = SimilarityRanker().rank([1.0, 0.0], Corpus.from_records([]))

        assert result.status is RankStatus.EMPTY_CORPUS
        assert result.stories == []

    def test_unembedded_corpus_is_no_match(self) -> None:
        corpus = Corpus.from_records([make_story("x"), make_story("y")])

        result = SimilarityRanker().rank([1.0, 0.0], corpus)

        assert result.status is RankStatus.NO_MATCH

    def test_at_most_k(self) -> None:
        corpus = Corpus.from_records([make_story(str(i), [1.0, 0.01 * i]) for i in range(10)])

        result = SimilarityRanker(top_k=3).rank([1.0, 0.0], corpus)

        assert len(result.stories) == 3
        assert [s.story.id for s in result.stories] == ["0", "1", "2"]

    def test_ties_keep_insertion_order(self) -> None:
        corpus = Corpus.from_records(
            [
                make_story("first", [1.0, 0.0]),
                make_story("second", [2.0, 0.0]),
                make_story("third", [3.0, 0.0]),
                make_story("fourth", [4.0, 0.0]),
            ]
        )

        result = SimilarityRanker(top_k=3).rank([1.0, 0.0], corpus)

        assert [s.story.id for s in result.stories] == ["first", "second", "third"]

    def test_ordering_properties(self) -> None:
        """Scores non-increasing, all above threshold, length bounded by K."""
        rng = np.random.default_rng(3)
        records = [make_story(str(i), rng.normal(size=6).tolist()) for i in range(40)]
        corpus = Corpus.from_records(records)
        ranker = SimilarityRanker(threshold=0.2, top_k=5)

        for _ in range(25):
            result = ranker.rank(rng.normal(size=6), corpus)
            scores = [s.score for s in result.stories]

            assert len(scores) <= 5
            assert all(score >= 0.2 for score in scores)
            assert all(a >= b for a, b in zip(scores, scores[1:]))
            assert all(not math.isnan(score) for score in scores)

    def test_threshold_is_inclusive(self) -> None:
        corpus = Corpus.from_records([make_story("edge", [1.0, 0.0])])

        result = SimilarityRanker(threshold=1.0).rank([2.0, 0.0], corpus)

        assert [s.story.id for s in result.stories] == ["edge"]

    def test_dimension_mismatch_propagates(self, small_corpus: Corpus) -> None:
        with pytest.raises(EmbeddingDimensionError):
            SimilarityRanker().rank([1.0, 0.0, 0.0], small_corpus)
