"""Story corpus loading.

The corpus is loaded once at startup and shared read-only by every request.
Loader strategies are tried in order; each reports a typed outcome and the
first one that loads wins. A later strategy being used is a supported,
logged degradation (for example the un-embedded corpus, whose records all
score 0), not an error.
"""

from __future__ import annotations

import gzip
import json
import logging
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import numpy.typing as npt
from pydantic import ValidationError

from kripa.errors import CorpusUnavailableError
from kripa.models import StoryRecord

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "Miracle of Love, Ram Dass"


class LoadStatus(Enum):
    """Outcome of a single loader strategy."""

    LOADED = "loaded"
    MISSING = "missing"
    CORRUPT = "corrupt"


@dataclass
class LoadOutcome:
    """Typed result of one loader strategy."""

    strategy: str
    status: LoadStatus
    records: list[StoryRecord] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True, eq=False)
class Corpus:
    """In-memory story index.

    Attributes:
        records: Stories in corpus insertion order
        matrix: (n, dim) float32 embedding matrix; rows of records without an
            embedding are zero. None when no record carries an embedding.
        strategy: Name of the loader strategy that produced the corpus
    """

    records: tuple[StoryRecord, ...]
    matrix: npt.NDArray[np.float32] | None
    strategy: str

    @property
    def dimension(self) -> int:
        return 0 if self.matrix is None else int(self.matrix.shape[1])

    @property
    def embedded_count(self) -> int:
        return sum(1 for record in self.records if record.has_embedding)

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def from_records(cls, records: list[StoryRecord], strategy: str = "memory") -> Corpus:
        """Build the index from records.

        Args:
            records: Stories in insertion order
            strategy: Name recorded for logging

        Returns:
            Corpus instance

        Raises:
            ValueError: If embedded records disagree on dimensionality
        """
        dims = {len(record.embedding) for record in records if record.has_embedding}
        if len(dims) > 1:
            raise ValueError(f"Inconsistent embedding dimensions in corpus: {sorted(dims)}")

        matrix: npt.NDArray[np.float32] | None = None
        if dims:
            dim = dims.pop()
            matrix = np.zeros((len(records), dim), dtype=np.float32)
            for row, record in enumerate(records):
                if record.has_embedding:
                    matrix[row] = np.asarray(record.embedding, dtype=np.float32)
            matrix.setflags(write=False)

        return cls(records=tuple(records), matrix=matrix, strategy=strategy)


def parse_stories(payload: Any, default_source: str = DEFAULT_SOURCE) -> list[StoryRecord]:
    """Convert a decoded corpus document into StoryRecords.

    Accepts either a list of story objects or ``{"stories": [...]}``.

    Args:
        payload: Decoded JSON document
        default_source: Citation used when a story has none

    Returns:
        StoryRecords in document order

    Raises:
        ValueError: If the document shape or a story is invalid
    """
    if isinstance(payload, dict):
        payload = payload.get("stories")
    if not isinstance(payload, list):
        raise ValueError("Corpus must be a list of stories or an object with a 'stories' list")

    records: list[StoryRecord] = []
    for index, raw in enumerate(payload):
        if not isinstance(raw, dict):
            raise ValueError(f"Story #{index} is not an object")
        try:
            records.append(
                StoryRecord(
                    id=str(raw.get("id", index)),
                    title=raw.get("title", ""),
                    content=raw.get("content") or raw.get("text", ""),
                    source=raw.get("source_url") or raw.get("source") or default_source,
                    tags=tuple(raw.get("tags") or raw.get("topics") or ()),
                    embedding=tuple(raw.get("embedding") or ()),
                    situations=tuple(raw.get("situations") or raw.get("life_situations") or ()),
                    emotions=tuple(raw.get("emotions") or ()),
                )
            )
        except ValidationError as e:
            raise ValueError(f"Story #{index} is invalid: {e.error_count()} field error(s)") from e

    return records


class CorpusStrategy(ABC):
    """One way of obtaining the corpus."""

    name: str = "base"

    def __init__(self, path: Path, default_source: str = DEFAULT_SOURCE) -> None:
        self.path = path
        self.default_source = default_source

    def load(self) -> LoadOutcome:
        """Attempt to load the corpus.

        Returns:
            LoadOutcome describing success, a missing artifact or a corrupt one
        """
        if not self.path.exists():
            return LoadOutcome(self.name, LoadStatus.MISSING, error=f"{self.path} not found")

        try:
            payload = self._read()
            records = parse_stories(payload, self.default_source)
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            return LoadOutcome(self.name, LoadStatus.CORRUPT, error=f"{type(e).__name__}: {e}")

        return LoadOutcome(self.name, LoadStatus.LOADED, records=records)

    @abstractmethod
    def _read(self) -> Any:
        """Read and decode the artifact."""


class GzipJsonStrategy(CorpusStrategy):
    """Gzip-compressed JSON corpus with precomputed embeddings."""

    name = "embedded-gzip"

    def _read(self) -> Any:
        with gzip.open(self.path, "rb") as f:
            return json.loads(f.read().decode("utf-8"))


class PlainJsonStrategy(CorpusStrategy):
    """Plain JSON corpus, usually without embeddings."""

    name = "plain-json"

    def _read(self) -> Any:
        return json.loads(self.path.read_text(encoding="utf-8"))


class CorpusLoader:
    """Tries loader strategies in order and builds the in-memory corpus."""

    def __init__(self, strategies: list[CorpusStrategy]) -> None:
        """Initialize loader.

        Args:
            strategies: Strategies in preference order
        """
        if not strategies:
            raise ValueError("CorpusLoader requires at least one strategy")
        self.strategies = strategies

    @classmethod
    def from_directory(
        cls,
        corpus_dir: Path,
        embedded_file: str = "stories-with-embeddings.json.gz",
        plain_file: str = "stories.json",
        default_source: str = DEFAULT_SOURCE,
    ) -> CorpusLoader:
        """Build the default strategy chain: embedded gzip, then plain JSON."""
        return cls(
            [
                GzipJsonStrategy(corpus_dir / embedded_file, default_source),
                PlainJsonStrategy(corpus_dir / plain_file, default_source),
            ]
        )

    def load(self) -> Corpus:
        """Load the corpus from the first strategy that succeeds.

        Returns:
            Corpus built by the chosen strategy

        Raises:
            CorpusUnavailableError: If every strategy failed
        """
        failures: list[LoadOutcome] = []

        for position, strategy in enumerate(self.strategies):
            outcome = strategy.load()

            if outcome.status is LoadStatus.LOADED:
                try:
                    corpus = Corpus.from_records(outcome.records, strategy=outcome.strategy)
                except ValueError as e:
                    failures.append(
                        LoadOutcome(outcome.strategy, LoadStatus.CORRUPT, error=str(e))
                    )
                    logger.error(f"Corpus strategy '{outcome.strategy}' rejected: {e}")
                    continue

                if position > 0:
                    logger.warning(
                        f"⚠️ Corpus degraded: using '{corpus.strategy}' after "
                        + ", ".join(f"{f.strategy}={f.status.value}" for f in failures)
                    )
                if corpus.embedded_count < len(corpus):
                    logger.warning(
                        f"{len(corpus) - corpus.embedded_count} of {len(corpus)} stories have no "
                        "embedding and will never match"
                    )
                logger.info(
                    f"✅ Loaded {len(corpus)} stories via '{corpus.strategy}' "
                    f"(dim={corpus.dimension})"
                )
                return corpus

            failures.append(outcome)
            log = logger.error if outcome.status is LoadStatus.CORRUPT else logger.warning
            log(f"Corpus strategy '{outcome.strategy}' {outcome.status.value}: {outcome.error}")

        raise CorpusUnavailableError(
            "No corpus artifact could be loaded",
            {f.strategy: f"{f.status.value}: {f.error}" for f in failures},
        )
