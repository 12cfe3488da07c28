"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class EmbeddingSpec:
    """The embedding space a store was built with."""

    provider: str
    model: str
    dimensions: int


@dataclass(slots=True)
class FileRecord:
    path: str
    hash: str
    updated_at: int
    last_indexed_at: int
    chunk_count: int = 0


@dataclass(slots=True)
class ActiveChunk:
    chunk_idx: int
    chunk_id: str
    content_hash: str
    embedding: list[float]
    start_line: int = 0
    end_line: int = 0


@dataclass(slots=True)
class ChunkRow:
    """Active chunk joined with the metadata ranking needs."""

    chunk_idx: int
    content: str
    path: str
    updated_at: int
    access_count: int
    last_accessed_at: int | None
    start_line: int = 0
    end_line: int = 0


@dataclass(slots=True)
class VectorHit(ChunkRow):
    distance: float = 0.0


@dataclass(slots=True)
class TextHit(ChunkRow):
    score: float = 0.0


@dataclass(slots=True)
class StoreStats:
    files: int
    active_chunks: int
    superseded_chunks: int
    cached_embeddings: int

    def to_dict(self) -> dict[str, int]:
        return {
            "files": self.files,
            "active_chunks": self.active_chunks,
            "superseded_chunks": self.superseded_chunks,
            "cached_embeddings": self.cached_embeddings,
        }


__all__ = [
    "ActiveChunk",
    "ChunkRow",
    "EmbeddingSpec",
    "FileRecord",
    "StoreStats",
    "TextHit",
    "VectorHit",
]
