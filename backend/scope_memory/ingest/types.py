"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Sequence

from scope_memory.utils.hashing import sha256_text


@dataclass(slots=True, frozen=True)
class Chunk:
    """Chunk produced by a chunker prior to embedding."""

    id: str
    path: str
    start_line: int
    end_line: int
    text: str
    token_count: int

    @property
    def content_hash(self) -> str:
        return sha256_text(self.text)


@dataclass(slots=True)
class ChunkInsert:
    """Chunk with its embedding, ready to be stored."""

    chunk_id: str
    path: str
    start_line: int
    end_line: int
    content: str
    content_hash: str
    token_count: int
    embedding: list[float]

    @classmethod
    def from_chunk(cls, chunk: Chunk, embedding: Sequence[float]) -> "ChunkInsert":
        return cls(
            chunk_id=chunk.id,
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            content=chunk.text,
            content_hash=chunk.content_hash,
            token_count=chunk.token_count,
            embedding=list(embedding),
        )


@dataclass(slots=True, frozen=True)
class TranscriptLine:
    """One parsed transcript record and its line offset in the JSONL file."""

    offset: int
    item: dict[str, Any]


@dataclass(slots=True)
class TranscriptReadResult:
    lines: list[TranscriptLine]
    end_offset: int


@dataclass(slots=True)
class SyncStats:
    """Aggregated sync statistics."""

    files_indexed: int = 0
    files_skipped: int = 0
    files_removed: int = 0
    chunks_inserted: int = 0
    chunks_superseded: int = 0
    chunks_retained: int = 0
    embeddings_computed: int = 0
    embeddings_reused: int = 0

    def merge(self, other: "SyncStats") -> "SyncStats":
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))
        return self

    def to_dict(self) -> dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


__all__ = [
    "Chunk",
    "ChunkInsert",
    "TranscriptLine",
    "TranscriptReadResult",
    "SyncStats",
]
