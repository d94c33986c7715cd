"""Question normalisation before embedding."""

from __future__ import annotations

import re

# Leading salutations carry no semantic signal for retrieval
_SALUTATION_RE = re.compile(r"^(ram\s+ram|ram|baba|maharaj-?ji|maharaj)\b[\s,.!:-]*", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def truncate_words(text: str, max_words: int) -> str:
    """Keep at most ``max_words`` whitespace-separated words.

    Over-long questions are truncated, never rejected.
    """
    words = text.split()
    return " ".join(words[:max_words])


def clean_question(text: str) -> str:
    """Strip leading salutations and collapse whitespace.

    A question made only of a salutation is returned unchanged (collapsed)
    so it is never emptied.
    """
    collapsed = _WHITESPACE_RE.sub(" ", text).strip()
    stripped = collapsed
    while True:
        candidate = _SALUTATION_RE.sub("", stripped, count=1).strip()
        if candidate == stripped:
            break
        stripped = candidate
    return stripped or collapsed


def prepare_question(text: str, max_words: int) -> str:
    """Truncate to the word bound, then clean."""
    return clean_question(truncate_words(text, max_words))
