"""Structured error types raised by the memory engine."""

from __future__ import annotations


class ScopeMemoryError(Exception):
    """Base class for all engine errors."""


class StoreError(ScopeMemoryError):
    """Raised when the per-scope store cannot be opened or used."""


class EmbeddingConfigMismatch(StoreError):
    """Live embedding configuration disagrees with the store metadata."""

    def __init__(self, field: str, stored: str, configured: str) -> None:
        super().__init__(f"Embedding {field} mismatch (db={stored}, config={configured})")
        self.field = field
        self.stored = stored
        self.configured = configured


class StoreDependencyError(StoreError):
    """A required SQLite capability (e.g. FTS5) is unavailable."""


class EmbeddingError(ScopeMemoryError):
    """Base class for embedding provider failures."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderHTTPError(EmbeddingError):
    """Provider answered with a non-success HTTP status."""

    def __init__(self, message: str, status: int, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.status = status


class RateLimitError(ProviderHTTPError):
    """Provider asked us to slow down (HTTP 429)."""

    code = "rate_limit"

    def __init__(self, message: str, provider: str | None = None, status: int = 429) -> None:
        super().__init__(message, status=status, provider=provider)


class EmbeddingResponseError(EmbeddingError):
    """Provider response was malformed or incomplete."""


class EmbeddingDimensionMismatch(EmbeddingError):
    """Provider returned vectors of an unexpected length."""

    def __init__(self, expected: int, actual: int, provider: str | None = None) -> None:
        super().__init__(
            f"Embedding dimension mismatch (expected {expected}, got {actual})",
            provider=provider,
        )
        self.expected = expected
        self.actual = actual


class EmbeddingConfigError(EmbeddingError):
    """Provider cannot be constructed, e.g. a missing API key."""


class SyncError(ScopeMemoryError):
    """Raised when a sync pass cannot complete."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class SemanticMemoryError(ScopeMemoryError):
    """Raised by the facade for misuse such as a missing configuration."""


__all__ = [
    "ScopeMemoryError",
    "StoreError",
    "EmbeddingConfigMismatch",
    "StoreDependencyError",
    "EmbeddingError",
    "ProviderHTTPError",
    "RateLimitError",
    "EmbeddingResponseError",
    "EmbeddingDimensionMismatch",
    "EmbeddingConfigError",
    "SyncError",
    "SemanticMemoryError",
]
