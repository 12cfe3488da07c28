"""Test fixtures for scope memory."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from scope_memory.core.config import SemanticMemoryConfig, get_settings  # noqa: E402
from scope_memory.db.store import VectorStore, get_scope_dir  # noqa: E402
from scope_memory.ingest.embeddings import HashedEmbeddingProvider  # noqa: E402
from scope_memory.models.entities import EmbeddingSpec  # noqa: E402

SCOPE_ID = "telegram:chat:42"
DIMENSIONS = 64


class CountingEmbedder:
    """Hashed embeddings that remember every text they were asked for."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.provider = HashedEmbeddingProvider(dimensions=dimensions)
        self.calls: list[list[str]] = []

    @property
    def texts(self) -> list[str]:
        return [text for call in self.calls for text in call]

    def __call__(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return self.provider.embed(texts)


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset cached settings and provider credentials between tests."""
    monkeypatch.setenv("SCOPEMEM_ROOT_DIR", str(tmp_path / "root"))
    monkeypatch.delenv("SCOPEMEM_CONFIG", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def root_dir(tmp_path: Path) -> Path:
    return tmp_path / "root"


@pytest.fixture
def scope_dir(root_dir: Path) -> Path:
    path = get_scope_dir(root_dir, SCOPE_ID)
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def embedding_spec() -> EmbeddingSpec:
    return EmbeddingSpec(provider="hashed", model="hashed-bow", dimensions=DIMENSIONS)


@pytest.fixture
def hashed_config() -> SemanticMemoryConfig:
    return SemanticMemoryConfig(
        embedding_provider="hashed",
        embedding_model="hashed-bow",
        embedding_dimensions=DIMENSIONS,
    )


@pytest.fixture
def embedder() -> CountingEmbedder:
    return CountingEmbedder()


@pytest.fixture
def store(root_dir: Path, embedding_spec: EmbeddingSpec) -> Iterator[VectorStore]:
    opened = VectorStore.open(root_dir, SCOPE_ID, embedding_spec)
    yield opened
    opened.close()


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "# Notes\n\nremember: I like X\n"
