"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

SYNC_COUNT = Counter(
    "scopemem_sync_total",
    "Sync passes by outcome",
    labelnames=("status",),
    registry=REGISTRY,
)

SYNC_DURATION = Histogram(
    "scopemem_sync_duration_seconds",
    "Duration of a sync pass",
    registry=REGISTRY,
)

SEARCH_COUNT = Counter(
    "scopemem_search_total",
    "Search requests served",
    registry=REGISTRY,
)

SEARCH_LATENCY = Histogram(
    "scopemem_search_latency_seconds",
    "Latency of search requests",
    registry=REGISTRY,
)

EMBEDDING_REQUESTS = Counter(
    "scopemem_embedding_requests_total",
    "Embedding batch requests by provider and outcome",
    labelnames=("provider", "outcome"),
    registry=REGISTRY,
)

ACTIVE_CHUNKS = Gauge(
    "scopemem_active_chunks",
    "Active (non-superseded) chunks per scope store",
    labelnames=("scope",),
    registry=REGISTRY,
)


def metrics_payload() -> bytes:
    """Return the Prometheus text exposition for the private registry."""
    return generate_latest(REGISTRY)


__all__ = [
    "REGISTRY",
    "SYNC_COUNT",
    "SYNC_DURATION",
    "SEARCH_COUNT",
    "SEARCH_LATENCY",
    "EMBEDDING_REQUESTS",
    "ACTIVE_CHUNKS",
    "metrics_payload",
]
