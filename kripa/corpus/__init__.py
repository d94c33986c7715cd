"""Story corpus loading."""

from kripa.corpus.loader import (
    Corpus,
    CorpusLoader,
    CorpusStrategy,
    GzipJsonStrategy,
    LoadOutcome,
    LoadStatus,
    PlainJsonStrategy,
    parse_stories,
)

__all__ = [
    "Corpus",
    "CorpusLoader",
    "CorpusStrategy",
    "GzipJsonStrategy",
    "LoadOutcome",
    "LoadStatus",
    "PlainJsonStrategy",
    "parse_stories",
]
