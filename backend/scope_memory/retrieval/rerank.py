"""Reranking hooks."""

from __future__ import annotations

from typing import Any, Sequence

from rapidfuzz import fuzz

from scope_memory.core.errors import ScopeMemoryError
from scope_memory.core.logging import get_logger
from scope_memory.retrieval.search import SearchHooks, SearchRequest, SearchResult

logger = get_logger(__name__)

DEFAULT_CROSS_ENCODER = "cross-encoder/ms-marco-MiniLM-L-6-v2"


class FuzzyReranker(SearchHooks):
    """Blend a lexical token-set similarity into the fused score."""

    def __init__(self, weight: float = 0.5) -> None:
        self.weight = weight

    def rerank(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        for candidate in candidates:
            similarity = fuzz.token_set_ratio(request.query, candidate.content) / 100.0
            candidate.rerank_score = similarity
            candidate.score *= 1.0 + self.weight * similarity
        return sorted(candidates, key=lambda item: item.score, reverse=True)


class CrossEncoderReranker(SearchHooks):
    """Reorder the head of the candidate list with a sentence-transformers CrossEncoder.

    Only the first ``limit`` candidates are scored; the rest keep their order
    behind them. Fused scores are left untouched so thresholding still applies.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_CROSS_ENCODER,
        device: str | None = None,
        limit: int | None = None,
        model: Any | None = None,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.limit = limit
        self._model = model

    def rerank(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        if not candidates:
            return []
        limit = self.limit or max(request.top_k * 2, request.top_k + 2)
        head = list(candidates[:limit])
        tail = list(candidates[limit:])
        model = self._load()
        scores = model.predict([[request.query, candidate.content] for candidate in head])
        for candidate, score in zip(head, scores):
            candidate.rerank_score = float(score)
        head.sort(key=lambda item: item.rerank_score, reverse=True)
        return head + tail

    def _load(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import CrossEncoder
            except ImportError as exc:
                raise ScopeMemoryError(
                    "CrossEncoderReranker requires the 'rerank' extra (sentence-transformers)"
                ) from exc
            logger.info("Loading rerank model %s", self.model_name)
            self._model = CrossEncoder(self.model_name, device=self.device)
        return self._model


__all__ = ["CrossEncoderReranker", "FuzzyReranker"]
