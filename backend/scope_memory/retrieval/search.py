"""Search orchestration."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from scope_memory.core.config import SearchConfig
from scope_memory.core.logging import get_logger
from scope_memory.core.metrics import SEARCH_COUNT, SEARCH_LATENCY
from scope_memory.models.entities import ChunkRow, TextHit, VectorHit
from scope_memory.retrieval.hybrid import access_boost, reciprocal_rank_fusion, recency_boost
from scope_memory.utils.text import make_snippet
from scope_memory.utils.time import now_ms

logger = get_logger(__name__)


class SearchStore(Protocol):
    def vector_search(self, embedding: Sequence[float], limit: int) -> list[VectorHit]: ...

    def text_search(self, query: str, limit: int) -> list[TextHit]: ...

    def mark_access(self, chunk_idxs: Sequence[int]) -> None: ...


class NeighborStore(Protocol):
    def neighbor_chunks(self, chunk_idx: int, window: int = 1) -> list[ChunkRow]: ...


@dataclass(slots=True)
class SearchOptions:
    vector_weight: float = 0.7
    text_weight: float = 0.3
    rrf_k: float = 60.0
    min_score: float = 0.005
    recency_half_life_days: float = 30.0
    access_weight: float = 0.1
    candidate_multiplier: int = 4

    @classmethod
    def from_config(cls, config: SearchConfig) -> "SearchOptions":
        return cls(
            vector_weight=config.vector_weight,
            text_weight=config.text_weight,
            rrf_k=config.rrf_k,
            min_score=config.min_score,
            recency_half_life_days=config.recency_half_life_days,
            access_weight=config.access_weight,
        )


@dataclass(slots=True)
class SearchRequest:
    query: str
    embedding: list[float]
    top_k: int


@dataclass(slots=True)
class SearchResult:
    chunk_idx: int
    content: str
    path: str
    score: float = 0.0
    base_score: float = 0.0
    recency_boost: float = 1.0
    access_boost: float = 1.0
    snippet: str = ""
    updated_at: int = 0
    access_count: int = 0
    start_line: int = 0
    end_line: int = 0
    rerank_score: float | None = None

    @classmethod
    def from_row(cls, row: ChunkRow, base_score: float = 0.0) -> "SearchResult":
        return cls(
            chunk_idx=row.chunk_idx,
            content=row.content,
            path=row.path,
            base_score=base_score,
            snippet=make_snippet(row.content),
            updated_at=row.updated_at,
            access_count=row.access_count,
            start_line=row.start_line,
            end_line=row.end_line,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "chunk_idx": self.chunk_idx,
            "path": self.path,
            "score": self.score,
            "base_score": self.base_score,
            "recency_boost": self.recency_boost,
            "access_boost": self.access_boost,
            "snippet": self.snippet,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }


class SearchHooks:
    """Extension points of the search pipeline; the defaults change nothing."""

    def allow(self, candidate: SearchResult) -> bool:
        return True

    def expand(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        return []

    def rerank(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        return list(candidates)


class HookChain(SearchHooks):
    """Compose hooks: every prefilter must allow, expansions add up, rerankers run in order."""

    def __init__(self, hooks: Sequence[SearchHooks]) -> None:
        self.hooks = list(hooks)

    def allow(self, candidate: SearchResult) -> bool:
        return all(hook.allow(candidate) for hook in self.hooks)

    def expand(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        added: list[SearchResult] = []
        for hook in self.hooks:
            added.extend(hook.expand(request, candidates))
        return added

    def rerank(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        ordered = list(candidates)
        for hook in self.hooks:
            ordered = hook.rerank(request, ordered)
        return ordered


class PathPrefilter(SearchHooks):
    """Restrict candidates by source path."""

    def __init__(
        self,
        predicate: Callable[[str], bool] | None = None,
        blocked_prefixes: Sequence[str] = (),
    ) -> None:
        self.predicate = predicate
        self.blocked_prefixes = tuple(blocked_prefixes)

    def allow(self, candidate: SearchResult) -> bool:
        if self.blocked_prefixes and candidate.path.startswith(self.blocked_prefixes):
            return False
        if self.predicate is not None:
            return bool(self.predicate(candidate.path))
        return True


class NeighborExpansion(SearchHooks):
    """Pull in chunks adjacent to the best candidates of each file."""

    def __init__(self, store: NeighborStore, window: int = 1, decay: float = 0.5, max_parents: int | None = None) -> None:
        self.store = store
        self.window = window
        self.decay = decay
        self.max_parents = max_parents

    def expand(self, request: SearchRequest, candidates: Sequence[SearchResult]) -> list[SearchResult]:
        limit = self.max_parents if self.max_parents is not None else request.top_k
        seen = {candidate.chunk_idx for candidate in candidates}
        added: list[SearchResult] = []
        for parent in list(candidates)[:limit]:
            for row in self.store.neighbor_chunks(parent.chunk_idx, self.window):
                if row.chunk_idx in seen:
                    continue
                seen.add(row.chunk_idx)
                added.append(SearchResult.from_row(row, base_score=parent.base_score * self.decay))
        return added


class SearchEngine:
    """Hybrid vector + keyword search with recency and access boosts."""

    def __init__(
        self,
        store: SearchStore,
        options: SearchOptions | None = None,
        hooks: SearchHooks | None = None,
    ) -> None:
        self.store = store
        self.options = options or SearchOptions()
        self.hooks = hooks or SearchHooks()

    def search(self, request: SearchRequest) -> list[SearchResult]:
        if request.top_k <= 0:
            return []
        started = time.perf_counter()
        opts = self.options
        width = max(request.top_k, request.top_k * opts.candidate_multiplier)
        now = now_ms()

        vector_hits = self._allowed(self.store.vector_search(request.embedding, width))
        text_hits = self._allowed(self.store.text_search(request.query, width))

        rows: dict[int, ChunkRow] = {}
        for hit in [*vector_hits, *text_hits]:
            rows.setdefault(hit.chunk_idx, hit)
        fused = reciprocal_rank_fusion(
            [[hit.chunk_idx for hit in vector_hits], [hit.chunk_idx for hit in text_hits]],
            [opts.vector_weight, opts.text_weight],
            rrf_k=opts.rrf_k,
        )
        candidates = [self._boost(SearchResult.from_row(rows[item.identifier], item.score), now) for item in fused]
        candidates.sort(key=lambda item: item.score, reverse=True)

        known = {candidate.chunk_idx for candidate in candidates}
        for extra in self.hooks.expand(request, candidates):
            if extra.chunk_idx in known or not self.hooks.allow(extra):
                continue
            known.add(extra.chunk_idx)
            candidates.append(self._boost(extra, now))
        candidates.sort(key=lambda item: item.score, reverse=True)

        reranked: dict[int, SearchResult] = {}
        for candidate in self.hooks.rerank(request, candidates):
            reranked.setdefault(candidate.chunk_idx, candidate)
        final = [
            candidate
            for candidate in reranked.values()
            if self.hooks.allow(candidate) and candidate.score >= opts.min_score
        ][: request.top_k]

        self.store.mark_access([candidate.chunk_idx for candidate in final])
        SEARCH_COUNT.inc()
        SEARCH_LATENCY.observe(time.perf_counter() - started)
        logger.debug(
            "Search returned %s of %s candidates (%s vector, %s text)",
            len(final),
            len(candidates),
            len(vector_hits),
            len(text_hits),
        )
        return final

    def _allowed(self, hits: Sequence[ChunkRow]) -> list[ChunkRow]:
        return [hit for hit in hits if self.hooks.allow(SearchResult.from_row(hit))]

    def _boost(self, candidate: SearchResult, now: int) -> SearchResult:
        opts = self.options
        candidate.recency_boost = recency_boost(candidate.updated_at, opts.recency_half_life_days, now=now)
        candidate.access_boost = access_boost(candidate.access_count, opts.access_weight)
        candidate.score = candidate.base_score * candidate.recency_boost * candidate.access_boost
        return candidate


__all__ = [
    "HookChain",
    "NeighborExpansion",
    "PathPrefilter",
    "SearchEngine",
    "SearchHooks",
    "SearchOptions",
    "SearchRequest",
    "SearchResult",
]
