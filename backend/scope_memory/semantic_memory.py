"""Per-scope semantic memory facade."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from scope_memory.core.config import SemanticMemoryConfig
from scope_memory.core.errors import SemanticMemoryError
from scope_memory.core.logging import get_logger, log_context
from scope_memory.db.store import VectorStore
from scope_memory.ingest.embeddings import Embedder, build_providers, make_embedder
from scope_memory.ingest.sync import CompositeSyncManager, Syncable, SyncManager, TranscriptSyncManager
from scope_memory.ingest.types import SyncStats
from scope_memory.models.entities import EmbeddingSpec, StoreStats
from scope_memory.retrieval.search import (
    SearchEngine,
    SearchHooks,
    SearchOptions,
    SearchRequest,
    SearchResult,
)
from scope_memory.utils.hashing import hash_scope_id

logger = get_logger(__name__)

StoreFactory = Callable[[Path, str, EmbeddingSpec], VectorStore]
SearchEngineFactory = Callable[[VectorStore, SearchOptions, SearchHooks | None], SearchEngine]
SyncManagerFactory = Callable[[Path, str, VectorStore, Embedder, SemanticMemoryConfig], Syncable]


@dataclass(slots=True)
class _Wiring:
    store: VectorStore
    search_engine: SearchEngine
    sync_manager: Syncable
    embedder: Embedder


def default_store_factory(root_dir: Path, scope_id: str, embedding: EmbeddingSpec) -> VectorStore:
    return VectorStore.open(root_dir, scope_id, embedding)


def default_search_engine_factory(
    store: VectorStore, options: SearchOptions, hooks: SearchHooks | None
) -> SearchEngine:
    return SearchEngine(store, options, hooks)


def default_sync_manager_factory(
    root_dir: Path,
    scope_id: str,
    store: VectorStore,
    embedder: Embedder,
    config: SemanticMemoryConfig,
) -> Syncable:
    return CompositeSyncManager(
        [
            SyncManager(root_dir, scope_id, store, embedder, similarity_threshold=config.similarity_threshold),
            TranscriptSyncManager(
                root_dir, scope_id, store, embedder, max_new_lines_per_sync=config.transcript_max_lines
            ),
        ]
    )


class SemanticMemory:
    """Lazily wires store, sync and search for one scope.

    Nothing touches disk or the network until the first ``sync`` or ``search``
    with an enabled configuration.
    """

    def __init__(
        self,
        root_dir: Path,
        scope_id: str,
        config: SemanticMemoryConfig | None = None,
        embedder: Embedder | None = None,
        store_factory: StoreFactory | None = None,
        search_engine_factory: SearchEngineFactory | None = None,
        sync_manager_factory: SyncManagerFactory | None = None,
        hooks: SearchHooks | None = None,
    ) -> None:
        self.root_dir = Path(root_dir).expanduser()
        self.scope_id = scope_id
        self.config = config
        self.hooks = hooks
        self._embedder = embedder
        self._store_factory = store_factory or default_store_factory
        self._search_engine_factory = search_engine_factory or default_search_engine_factory
        self._sync_manager_factory = sync_manager_factory or default_sync_manager_factory
        self._lock = threading.RLock()
        self.store: VectorStore | None = None
        self.search_engine: SearchEngine | None = None
        self.sync_manager: Syncable | None = None

    @property
    def initialized(self) -> bool:
        return self.store is not None and self.search_engine is not None and self.sync_manager is not None

    def _resolve(self, config: SemanticMemoryConfig | None) -> SemanticMemoryConfig | None:
        return config if config is not None else self.config

    def _ensure_initialized(self, config: SemanticMemoryConfig | None) -> _Wiring:
        if not self.initialized:
            self._initialize(config)
        if self.store is None or self.search_engine is None or self.sync_manager is None or self._embedder is None:
            raise SemanticMemoryError("Semantic memory failed to initialize")
        return _Wiring(self.store, self.search_engine, self.sync_manager, self._embedder)

    def _initialize(self, config: SemanticMemoryConfig | None) -> None:
        if config is None:
            raise SemanticMemoryError("Semantic memory config is required to initialize")

        embedder = self._embedder
        if embedder is None:
            embedder = make_embedder(build_providers(config), config)
            self._embedder = embedder
        spec = EmbeddingSpec(
            provider=config.embedding_provider,
            model=config.embedding_model,
            dimensions=config.embedding_dimensions,
        )
        self.store = self._store_factory(self.root_dir, self.scope_id, spec)
        self.search_engine = self._search_engine_factory(
            self.store, SearchOptions.from_config(config.search), self.hooks
        )
        self.sync_manager = self._sync_manager_factory(self.root_dir, self.scope_id, self.store, embedder, config)
        logger.debug(
            "Initialised semantic memory with %s/%s",
            spec.provider,
            spec.model,
            extra=log_context(scope=hash_scope_id(self.scope_id)[:12]),
        )

    def sync(self, config: SemanticMemoryConfig | None = None) -> SyncStats | None:
        resolved = self._resolve(config)
        if resolved is not None and not resolved.enabled:
            return None
        with self._lock:
            return self._ensure_initialized(resolved).sync_manager.sync()

    def search(self, query: str, top_k: int, config: SemanticMemoryConfig | None = None) -> list[SearchResult]:
        """Sync, embed ``query`` and return the ranked results."""
        resolved = self._resolve(config)
        if resolved is not None and not resolved.enabled:
            return []
        with self._lock:
            wiring = self._ensure_initialized(resolved)
            wiring.sync_manager.sync()
            vectors = wiring.embedder([query])
            return wiring.search_engine.search(SearchRequest(query=query, embedding=vectors[0], top_k=top_k))

    def stats(self, config: SemanticMemoryConfig | None = None) -> StoreStats:
        with self._lock:
            return self._ensure_initialized(self._resolve(config)).store.stats()

    def close(self) -> None:
        with self._lock:
            if self.store is not None:
                self.store.close()
            self.store = None
            self.search_engine = None
            self.sync_manager = None


__all__ = [
    "SemanticMemory",
    "default_search_engine_factory",
    "default_store_factory",
    "default_sync_manager_factory",
]
