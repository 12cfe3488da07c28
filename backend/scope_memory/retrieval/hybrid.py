"""Hybrid ranking utilities."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from scope_memory.utils.time import age_days


@dataclass(slots=True)
class RankedItem:
    identifier: int
    score: float


def rrf_score(rank: int, rrf_k: float = 60.0) -> float:
    """Reciprocal-rank contribution of a 1-based ``rank``."""
    return 1.0 / (rrf_k + rank)


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[int]],
    weights: Sequence[float],
    rrf_k: float = 60.0,
) -> list[RankedItem]:
    """Combine rankings using weighted reciprocal rank fusion.

    An identifier absent from a ranking contributes nothing for it. Ties keep
    first-seen order.
    """
    scores: dict[int, float] = {}
    for ranking, weight in zip(rankings, weights):
        for rank, identifier in enumerate(ranking, start=1):
            scores[identifier] = scores.get(identifier, 0.0) + weight * rrf_score(rank, rrf_k)
    fused = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [RankedItem(identifier=identifier, score=score) for identifier, score in fused]


def recency_boost(updated_at: int, half_life_days: float, now: int | None = None) -> float:
    """``1 + 2^(-age/half_life)``: 2.0 for fresh chunks, decaying toward 1.0."""
    age = max(0.0, age_days(updated_at, now=now))
    return 1.0 + math.pow(2.0, -age / max(1.0, half_life_days))


def access_boost(access_count: int, weight: float) -> float:
    return 1.0 + math.log1p(max(0, access_count)) * weight


__all__ = [
    "RankedItem",
    "access_boost",
    "reciprocal_rank_fusion",
    "recency_boost",
    "rrf_score",
]
