"""In-memory nearest-neighbour index over normalised vectors."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from scope_memory.db.sqlite import SQLiteDatabase
from scope_memory.ingest.embeddings import vector_from_bytes


@dataclass(slots=True)
class Neighbor:
    chunk_idx: int
    similarity: float

    @property
    def distance(self) -> float:
        """L2 distance between unit vectors, derived from the cosine."""
        return math.sqrt(max(0.0, 2.0 - 2.0 * self.similarity))


class VectorIndex:
    """Brute-force cosine index keyed by chunk index."""

    def __init__(self, dim: int) -> None:
        self.dim = dim
        self._vectors: dict[int, list[float]] = {}

    @property
    def size(self) -> int:
        return len(self._vectors)

    def upsert(self, ids: Sequence[int], vectors: Sequence[Sequence[float]]) -> None:
        for vector in vectors:
            if len(vector) != self.dim:
                raise ValueError("Vector dimension mismatch")
        for chunk_idx, vector in zip(ids, vectors):
            self._vectors[chunk_idx] = list(vector)

    def remove(self, ids: Iterable[int]) -> None:
        for chunk_idx in ids:
            self._vectors.pop(chunk_idx, None)

    def search(self, vector: Sequence[float], top_k: int = 8) -> list[Neighbor]:
        if not self._vectors or top_k <= 0:
            return []
        if len(vector) != self.dim:
            raise ValueError("Query vector dimension mismatch")
        scores = [Neighbor(chunk_idx=idx, similarity=_dot(stored, vector)) for idx, stored in self._vectors.items()]
        scores.sort(key=lambda item: item.similarity, reverse=True)
        return scores[:top_k]

    def rebuild(self, db: SQLiteDatabase) -> None:
        """Reload every vector persisted in ``chunks_vec``."""
        self._vectors = {}
        for row in db.query("SELECT chunk_idx, embedding FROM chunks_vec"):
            self._vectors[int(row["chunk_idx"])] = vector_from_bytes(row["embedding"])


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


__all__ = ["Neighbor", "VectorIndex", "cosine_similarity"]
