"""Embedding providers and the fallback router."""

from __future__ import annotations

import hashlib
import math
import os
import re
import time
from array import array
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import requests

from scope_memory.core.config import SemanticMemoryConfig
from scope_memory.core.errors import (
    EmbeddingConfigError,
    EmbeddingDimensionMismatch,
    EmbeddingError,
    EmbeddingResponseError,
    ProviderHTTPError,
    RateLimitError,
)
from scope_memory.core.logging import get_logger, log_context
from scope_memory.core.metrics import EMBEDDING_REQUESTS

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_MS = 500
DEFAULT_TIMEOUT = 60.0

_TOKEN_RE = re.compile(r"\w+")

Embedder = Callable[[list[str]], list[list[float]]]


class EmbeddingProvider(Protocol):
    """Anything with a name that turns a batch of texts into vectors."""

    name: str

    def embed(self, texts: list[str]) -> list[list[float]]: ...


@dataclass(slots=True)
class EmbedResult:
    provider: str
    vectors: list[list[float]]


def normalize(vector: Sequence[float]) -> list[float]:
    """Return the L2-normalised copy of ``vector``; zero vectors pass through."""
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return list(vector)
    inv = 1.0 / norm
    return [value * inv for value in vector]


def is_rate_limit_error(exc: BaseException) -> bool:
    if getattr(exc, "status", None) == 429:
        return True
    if getattr(exc, "code", None) == "rate_limit":
        return True
    return "rate limit" in str(exc).lower()


def _batches(texts: Sequence[str], batch_size: int) -> list[list[str]]:
    return [list(texts[idx : idx + batch_size]) for idx in range(0, len(texts), batch_size)]


def embed_with_fallback(
    texts: Sequence[str],
    providers: Sequence[EmbeddingProvider],
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_ms: int = DEFAULT_BACKOFF_MS,
    expected_dimensions: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> EmbedResult:
    """Embed ``texts`` with the first provider that succeeds.

    Rate-limited batches are retried ``max_retries`` times with a linear
    backoff; any other failure moves on to the next provider. Vectors are
    L2-normalised. If every provider fails the last error is raised.
    """
    last_error: BaseException | None = None

    for provider in providers:
        vectors: list[list[float]] = []
        failure: BaseException | None = None
        for batch in _batches(texts, batch_size):
            attempt = 0
            while True:
                try:
                    raw = provider.embed(batch)
                    vectors.extend(_checked_vectors(provider.name, batch, raw, expected_dimensions))
                    EMBEDDING_REQUESTS.labels(provider=provider.name, outcome="ok").inc()
                    break
                except Exception as exc:  # noqa: BLE001 - classified below
                    attempt += 1
                    if is_rate_limit_error(exc) and attempt <= max_retries:
                        EMBEDDING_REQUESTS.labels(provider=provider.name, outcome="retry").inc()
                        logger.warning(
                            "Rate limited by %s, retry %s/%s",
                            provider.name,
                            attempt,
                            max_retries,
                            extra=log_context(provider=provider.name),
                        )
                        sleep(backoff_ms * attempt / 1000.0)
                        continue
                    EMBEDDING_REQUESTS.labels(provider=provider.name, outcome="error").inc()
                    failure = exc
                    break
            if failure is not None:
                break

        if failure is None:
            return EmbedResult(provider=provider.name, vectors=vectors)

        last_error = failure
        logger.warning(
            "Embedding provider %s failed: %s",
            provider.name,
            failure,
            extra=log_context(provider=provider.name),
        )

    if last_error is None:
        raise EmbeddingError("No embedding providers available")
    raise last_error


def _checked_vectors(
    provider: str,
    batch: Sequence[str],
    raw: Sequence[Sequence[float]],
    expected_dimensions: int | None,
) -> list[list[float]]:
    if len(raw) != len(batch):
        raise EmbeddingResponseError(
            f"{provider} returned {len(raw)} vectors for {len(batch)} inputs", provider=provider
        )
    normalized = [normalize(vector) for vector in raw]
    if expected_dimensions:
        for vector in normalized:
            if len(vector) != expected_dimensions:
                raise EmbeddingDimensionMismatch(expected_dimensions, len(vector), provider=provider)
    return normalized


class _HTTPProvider:
    """Shared plumbing for JSON-over-HTTPS embedding vendors."""

    name = "http"
    env_key = ""
    default_base_url = ""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        dimensions: int | None = None,
        api_base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        key = api_key or os.environ.get(self.env_key)
        if not key:
            raise EmbeddingConfigError(f"{self.env_key} is required for {self.name} embeddings", provider=self.name)
        self.api_key = key
        self.model = model
        self.dimensions = dimensions
        self.api_base_url = (api_base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        if resp.status_code == 429:
            raise RateLimitError(f"{self.name} embeddings rate limited: {resp.text}", provider=self.name)
        if not resp.ok:
            raise ProviderHTTPError(
                f"{self.name} embeddings error ({resp.status_code}): {resp.text}",
                status=resp.status_code,
                provider=self.name,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise EmbeddingResponseError(f"{self.name} embeddings response is not JSON", provider=self.name) from exc


class OpenAIEmbeddingProvider(_HTTPProvider):
    name = "openai"
    env_key = "OPENAI_API_KEY"
    default_base_url = "https://api.openai.com/v1"

    def __init__(self, model: str = "text-embedding-3-small", **kwargs: Any) -> None:
        super().__init__(model=model, **kwargs)

    def embed(self, texts: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {"model": self.model, "input": texts}
        if self.dimensions:
            payload["dimensions"] = self.dimensions
        data = self._post(
            f"{self.api_base_url}/embeddings",
            payload,
            {"authorization": f"Bearer {self.api_key}"},
        )
        items = data.get("data") if isinstance(data, dict) else None
        if not items or len(items) != len(texts):
            raise EmbeddingResponseError("OpenAI embeddings response missing data", provider=self.name)
        return [item["embedding"] for item in items]


class GeminiEmbeddingProvider(_HTTPProvider):
    name = "gemini"
    env_key = "GEMINI_API_KEY"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, model: str = "text-embedding-004", **kwargs: Any) -> None:
        super().__init__(model=model, **kwargs)

    def embed(self, texts: list[str]) -> list[list[float]]:
        requests_payload = []
        for text in texts:
            entry: dict[str, Any] = {"model": f"models/{self.model}", "content": {"parts": [{"text": text}]}}
            if self.dimensions:
                entry["outputDimensionality"] = self.dimensions
            requests_payload.append(entry)
        data = self._post(
            f"{self.api_base_url}/models/{self.model}:batchEmbedContents",
            {"requests": requests_payload},
            {"x-goog-api-key": self.api_key},
        )
        items = data.get("embeddings") if isinstance(data, dict) else None
        if not items or len(items) != len(texts):
            raise EmbeddingResponseError("Gemini embeddings response missing data", provider=self.name)
        vectors: list[list[float]] = []
        for item in items:
            values = item.get("values")
            if not values:
                raise EmbeddingResponseError("Gemini embeddings response missing values", provider=self.name)
            vectors.append(values)
        return vectors


class HashedEmbeddingProvider:
    """Deterministic local provider: hashed bag-of-words vectors."""

    name = "hashed"

    def __init__(self, dimensions: int = 384, model: str = "hashed-bow") -> None:
        self.dimensions = dimensions
        self.model = model

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            vector = [0.0] * self.dimensions
            for token in _TOKEN_RE.findall(text.lower()):
                vector[_hash_token(token, self.dimensions)] += 1.0
            vectors.append(normalize(vector))
        return vectors


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % dim


def create_provider(name: str, model: str, dimensions: int) -> EmbeddingProvider:
    if name == "openai":
        return OpenAIEmbeddingProvider(model=model, dimensions=dimensions)
    if name == "gemini":
        return GeminiEmbeddingProvider(model=model, dimensions=dimensions)
    if name == "hashed":
        return HashedEmbeddingProvider(dimensions=dimensions, model=model)
    raise EmbeddingConfigError(f"Unknown embedding provider '{name}'", provider=name)


_DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "gemini": "text-embedding-004",
    "hashed": "hashed-bow",
}


def build_providers(config: SemanticMemoryConfig) -> list[EmbeddingProvider]:
    """Primary provider from config, then the fallback chain.

    Without an explicit fallback an OpenAI primary falls back to Gemini when a
    Gemini key is present in the environment.
    """
    dims = config.embedding_dimensions
    providers = [create_provider(config.embedding_provider, config.embedding_model, dims)]
    fallback = config.fallback_provider
    if fallback is None and config.embedding_provider == "openai" and os.environ.get("GEMINI_API_KEY"):
        fallback = "gemini"
    if fallback and fallback != config.embedding_provider:
        providers.append(create_provider(fallback, _DEFAULT_MODELS[fallback], dims))
    return providers


def make_embedder(providers: Sequence[EmbeddingProvider], config: SemanticMemoryConfig) -> Embedder:
    """Bind the router to a provider chain and the configured retry policy."""

    def embed(texts: list[str]) -> list[list[float]]:
        result = embed_with_fallback(
            texts,
            providers,
            batch_size=config.embed_batch_size,
            max_retries=config.embed_max_retries,
            backoff_ms=config.embed_backoff_ms,
            expected_dimensions=config.embedding_dimensions,
        )
        return result.vectors

    return embed


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def vector_from_bytes(payload: bytes) -> list[float]:
    floats = array("f")
    floats.frombytes(payload)
    return list(floats)


__all__ = [
    "EmbedResult",
    "Embedder",
    "EmbeddingProvider",
    "GeminiEmbeddingProvider",
    "HashedEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "build_providers",
    "create_provider",
    "embed_with_fallback",
    "is_rate_limit_error",
    "make_embedder",
    "normalize",
    "vector_from_bytes",
    "vector_to_bytes",
]
