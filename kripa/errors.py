"""Exception hierarchy for Kripa.

Quota denials, bot rejections and "no matching story" outcomes are normal
control flow and are NOT represented here.
"""

from __future__ import annotations

from typing import Any


class KripaError(Exception):
    """Base exception for Kripa errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize error.

        Args:
            message: Error message
            details: Additional error details (never sent to clients)
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Error dictionary with message and details
        """
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class CorpusUnavailableError(KripaError):
    """Raised when every corpus loader strategy failed."""


class EmbeddingDimensionError(KripaError, ValueError):
    """Raised when a query embedding and a record embedding differ in length."""


class EmbeddingServiceError(KripaError):
    """Raised when the external embedding service cannot produce a vector."""


class CompletionServiceError(KripaError):
    """Raised when the external completion service call fails."""


class ShardCorruptError(KripaError):
    """Raised when a persisted day shard exists but cannot be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Corrupt analytics shard {path}: {reason}", {"path": path})
        self.path = path
        self.reason = reason


class QuotaStoreError(KripaError):
    """Raised when the quota counter store cannot be persisted."""


__all__ = [
    "CompletionServiceError",
    "CorpusUnavailableError",
    "EmbeddingDimensionError",
    "EmbeddingServiceError",
    "KripaError",
    "QuotaStoreError",
    "ShardCorruptError",
]
