"""Retrieval orchestration components."""

from .vector_index import VectorIndex
from .search import (
    HookChain,
    NeighborExpansion,
    PathPrefilter,
    SearchEngine,
    SearchHooks,
    SearchOptions,
    SearchRequest,
    SearchResult,
)
from .rerank import CrossEncoderReranker, FuzzyReranker
from .hybrid import access_boost, reciprocal_rank_fusion, recency_boost

__all__ = [
    "VectorIndex",
    "SearchEngine",
    "SearchHooks",
    "SearchOptions",
    "SearchRequest",
    "SearchResult",
    "HookChain",
    "NeighborExpansion",
    "PathPrefilter",
    "CrossEncoderReranker",
    "FuzzyReranker",
    "access_boost",
    "reciprocal_rank_fusion",
    "recency_boost",
]
