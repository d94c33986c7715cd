"""Tests for corpus loading strategies."""

from __future__ import annotations

import gzip
import json
import logging
from pathlib import Path

import pytest

from kripa.corpus import (
    Corpus,
    CorpusLoader,
    GzipJsonStrategy,
    LoadStatus,
    PlainJsonStrategy,
    parse_stories,
)
from kripa.errors import CorpusUnavailableError

EMBEDDED = [
    {
        "id": "1",
        "title": "The Blanket",
        "content": "Maharaj-ji wrapped himself in his blanket...",
        "source_url": "https://example.org/blanket",
        "tags": ["faith"],
        "embedding": [0.1, 0.2, 0.3],
    },
    {
        "id": "2",
        "title": "Feeding Everyone",
        "text": "He asked that everyone be fed.",
        "topics": ["work"],
        "embedding": [0.3, 0.2, 0.1],
        "life_situations": ["job loss"],
    },
]


def write_gzip(path: Path, payload: object) -> None:
    with gzip.open(path, "wb") as f:
        f.write(json.dumps(payload).encode("utf-8"))


class TestParseStories:
    """Test suite for parse_stories."""

    def test_list_document(self) -> None:
        records = parse_stories(EMBEDDED)

        assert [r.id for r in records] == ["1", "2"]
        assert records[0].source == "https://example.org/blanket"
        assert records[1].content == "He asked that everyone be fed."
        assert records[1].tags == ("work",)
        assert records[1].situations == ("job loss",)

    def test_object_document(self) -> None:
        records = parse_stories({"stories": EMBEDDED})
        assert len(records) == 2

    def test_default_source(self) -> None:
        records = parse_stories(EMBEDDED)
        assert records[1].source == "Miracle of Love, Ram Dass"

    def test_missing_id_uses_position(self) -> None:
        records = parse_stories([{"title": "t", "content": "c"}])
        assert records[0].id == "0"
        assert not records[0].has_embedding

    def test_rejects_bad_shape(self) -> None:
        with pytest.raises(ValueError):
            parse_stories({"items": []})
        with pytest.raises(ValueError):
            parse_stories(["not an object"])


class TestStrategies:
    """Test suite for individual loader strategies."""

    def test_gzip_loaded(self, tmp_path: Path) -> None:
        path = tmp_path / "stories-with-embeddings.json.gz"
        write_gzip(path, EMBEDDED)

        outcome = GzipJsonStrategy(path).load()

        assert outcome.status is LoadStatus.LOADED
        assert len(outcome.records) == 2

    def test_missing(self, tmp_path: Path) -> None:
        outcome = GzipJsonStrategy(tmp_path / "nope.json.gz").load()

        assert outcome.status is LoadStatus.MISSING
        assert outcome.records == []

    def test_corrupt_gzip(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json.gz"
        path.write_bytes(b"definitely not gzip")

        outcome = GzipJsonStrategy(path).load()

        assert outcome.status is LoadStatus.CORRUPT
        assert outcome.error

    def test_corrupt_json(self, tmp_path: Path) -> None:
        path = tmp_path / "stories.json"
        path.write_text("{not json", encoding="utf-8")

        outcome = PlainJsonStrategy(path).load()

        assert outcome.status is LoadStatus.CORRUPT


class TestCorpusLoader:
    """Test suite for CorpusLoader."""

    def test_prefers_embedded_corpus(self, tmp_path: Path) -> None:
        write_gzip(tmp_path / "stories-with-embeddings.json.gz", EMBEDDED)
        (tmp_path / "stories.json").write_text(json.dumps([{"id": "p", "title": "t", "content": "c"}]))

        corpus = CorpusLoader.from_directory(tmp_path).load()

        assert corpus.strategy == "embedded-gzip"
        assert len(corpus) == 2
        assert corpus.dimension == 3
        assert corpus.embedded_count == 2

    def test_falls_back_to_plain_corpus(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        (tmp_path / "stories-with-embeddings.json.gz").write_bytes(b"corrupt")
        (tmp_path / "stories.json").write_text(
            json.dumps({"stories": [{"id": "p", "title": "t", "content": "c"}]})
        )

        with caplog.at_level(logging.WARNING):
            corpus = CorpusLoader.from_directory(tmp_path).load()

        assert corpus.strategy == "plain-json"
        assert corpus.matrix is None
        assert corpus.dimension == 0
        assert "plain-json" in caplog.text

    def test_both_missing_is_fatal(self, tmp_path: Path) -> None:
        with pytest.raises(CorpusUnavailableError) as exc_info:
            CorpusLoader.from_directory(tmp_path).load()

        assert set(exc_info.value.details) == {"embedded-gzip", "plain-json"}

    def test_inconsistent_dimensions_fall_through(self, tmp_path: Path) -> None:
        write_gzip(
            tmp_path / "stories-with-embeddings.json.gz",
            [
                {"id": "1", "title": "a", "content": "a", "embedding": [1.0, 0.0]},
                {"id": "2", "title": "b", "content": "b", "embedding": [1.0, 0.0, 0.0]},
            ],
        )
        (tmp_path / "stories.json").write_text(json.dumps([{"id": "p", "title": "t", "content": "c"}]))

        corpus = CorpusLoader.from_directory(tmp_path).load()

        assert corpus.strategy == "plain-json"

    def test_requires_strategy(self) -> None:
        with pytest.raises(ValueError):
            CorpusLoader([])


class TestCorpus:
    """Test suite for the in-memory corpus."""

    def test_matrix_is_read_only(self) -> None:
        corpus = Corpus.from_records(parse_stories(EMBEDDED))

        assert corpus.matrix is not None
        with pytest.raises(ValueError):
            corpus.matrix[0, 0] = 5.0

    def test_partial_embeddings_get_zero_rows(self) -> None:
        records = parse_stories(EMBEDDED + [{"id": "3", "title": "x", "content": "y"}])
        corpus = Corpus.from_records(records)

        assert corpus.matrix is not None
        assert corpus.matrix.shape == (3, 3)
        assert not corpus.matrix[2].any()
        assert corpus.embedded_count == 2
