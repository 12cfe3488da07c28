"""Tests for embedding providers and the fallback router."""

from __future__ import annotations

import math
from typing import Any

import pytest

from scope_memory.core.config import SemanticMemoryConfig
from scope_memory.core.errors import (
    EmbeddingConfigError,
    EmbeddingDimensionMismatch,
    EmbeddingError,
    ProviderHTTPError,
    RateLimitError,
)
from scope_memory.ingest.embeddings import (
    HashedEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_providers,
    embed_with_fallback,
    is_rate_limit_error,
    vector_from_bytes,
    vector_to_bytes,
)


class ScriptedProvider:
    """Replays a list of outcomes: an exception to raise or a vector length to return."""

    def __init__(self, name: str, outcomes: list[Any], dimensions: int = 4) -> None:
        self.name = name
        self.outcomes = list(outcomes)
        self.dimensions = dimensions
        self.calls = 0

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.dimensions
        if isinstance(outcome, BaseException):
            raise outcome
        return [[float(idx + 1)] * outcome for idx, _ in enumerate(texts)]


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.requests: list[dict[str, Any]] = []

    def post(self, url: str, json: Any, headers: dict[str, str], timeout: float) -> FakeResponse:
        self.requests.append({"url": url, "json": json, "headers": headers})
        return self.response


def _no_sleep(_: float) -> None:
    return None


def test_hashed_provider_is_deterministic_and_normalised() -> None:
    provider = HashedEmbeddingProvider(dimensions=32)
    first, second = provider.embed(["I like X", "I like X"])
    assert first == second
    assert math.isclose(sum(value * value for value in first), 1.0, rel_tol=1e-6)


def test_router_normalises_and_reports_provider() -> None:
    result = embed_with_fallback(["a", "b"], [ScriptedProvider("p", [4])], sleep=_no_sleep)
    assert result.provider == "p"
    assert len(result.vectors) == 2
    assert math.isclose(sum(value * value for value in result.vectors[1]), 1.0, rel_tol=1e-6)


def test_rate_limit_is_retried_then_succeeds() -> None:
    sleeps: list[float] = []
    provider = ScriptedProvider("p", [RateLimitError("slow down"), RateLimitError("slow down"), 4])
    result = embed_with_fallback(["a"], [provider], max_retries=2, backoff_ms=100, sleep=sleeps.append)
    assert result.provider == "p"
    assert provider.calls == 3
    assert sleeps == pytest.approx([0.1, 0.2])


def test_exhausted_retries_fall_back_to_next_provider() -> None:
    primary = ScriptedProvider("primary", [RateLimitError("x"), RateLimitError("x"), RateLimitError("x")])
    secondary = ScriptedProvider("secondary", [4])
    result = embed_with_fallback(["a"], [primary, secondary], max_retries=2, sleep=_no_sleep)
    assert result.provider == "secondary"
    assert primary.calls == 3


def test_non_retryable_error_falls_back_immediately() -> None:
    primary = ScriptedProvider("primary", [ProviderHTTPError("boom", status=500)])
    secondary = ScriptedProvider("secondary", [4])
    result = embed_with_fallback(["a"], [primary, secondary], sleep=_no_sleep)
    assert result.provider == "secondary"
    assert primary.calls == 1


def test_dimension_mismatch_moves_on_and_last_error_is_raised() -> None:
    wrong = ScriptedProvider("wrong", [3])
    also_wrong = ScriptedProvider("also-wrong", [5])
    with pytest.raises(EmbeddingDimensionMismatch) as excinfo:
        embed_with_fallback(["a"], [wrong, also_wrong], expected_dimensions=4, sleep=_no_sleep)
    assert excinfo.value.provider == "also-wrong"
    assert excinfo.value.actual == 5


def test_no_providers_is_an_error() -> None:
    with pytest.raises(EmbeddingError):
        embed_with_fallback(["a"], [], sleep=_no_sleep)


def test_batches_are_split() -> None:
    provider = ScriptedProvider("p", [4, 4, 4])
    result = embed_with_fallback([str(idx) for idx in range(5)], [provider], batch_size=2, sleep=_no_sleep)
    assert provider.calls == 3
    assert len(result.vectors) == 5


def test_openai_provider_maps_http_statuses() -> None:
    session = FakeSession(FakeResponse(429, text="too many"))
    provider = OpenAIEmbeddingProvider(api_key="k", dimensions=4, session=session)
    with pytest.raises(RateLimitError) as excinfo:
        provider.embed(["hello"])
    assert is_rate_limit_error(excinfo.value)

    session.response = FakeResponse(500, text="oops")
    with pytest.raises(ProviderHTTPError) as excinfo:
        provider.embed(["hello"])
    assert excinfo.value.status == 500
    assert not is_rate_limit_error(excinfo.value)


def test_openai_provider_sends_model_and_dimensions() -> None:
    payload = {"data": [{"embedding": [0.1, 0.2, 0.3, 0.4]}]}
    session = FakeSession(FakeResponse(200, payload=payload))
    provider = OpenAIEmbeddingProvider(api_key="k", dimensions=4, session=session)
    assert provider.embed(["hello"]) == [[0.1, 0.2, 0.3, 0.4]]
    sent = session.requests[0]
    assert sent["url"].endswith("/embeddings")
    assert sent["json"] == {"model": "text-embedding-3-small", "input": ["hello"], "dimensions": 4}
    assert sent["headers"]["authorization"] == "Bearer k"


def test_missing_api_key_is_a_config_error() -> None:
    with pytest.raises(EmbeddingConfigError):
        OpenAIEmbeddingProvider()


def test_build_providers_adds_gemini_fallback_when_key_present(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "o")
    monkeypatch.setenv("GEMINI_API_KEY", "g")
    providers = build_providers(SemanticMemoryConfig())
    assert [provider.name for provider in providers] == ["openai", "gemini"]

    hashed = build_providers(SemanticMemoryConfig(embedding_provider="hashed", embedding_dimensions=8))
    assert [provider.name for provider in hashed] == ["hashed"]


def test_vector_bytes_round_trip() -> None:
    vector = [0.5, -0.25, 1.0]
    assert vector_from_bytes(vector_to_bytes(vector)) == vector
