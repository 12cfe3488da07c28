"""Tests for the per-scope vector + text store."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from scope_memory.core.errors import EmbeddingConfigMismatch, StoreError
from scope_memory.db.store import VectorStore, build_fts_query, get_scope_index_path
from scope_memory.ingest.embeddings import HashedEmbeddingProvider
from scope_memory.ingest.types import ChunkInsert
from scope_memory.models.entities import EmbeddingSpec
from scope_memory.retrieval.vector_index import VectorIndex
from scope_memory.utils.hashing import hash_scope_id, sha256_text

from conftest import DIMENSIONS, SCOPE_ID

_provider = HashedEmbeddingProvider(dimensions=DIMENSIONS)


def _chunk(chunk_id: str, text: str, path: str = "notes.md", start: int = 1) -> ChunkInsert:
    return ChunkInsert(
        chunk_id=chunk_id,
        path=path,
        start_line=start,
        end_line=start,
        content=text,
        content_hash=sha256_text(text),
        token_count=len(text) // 4 + 1,
        embedding=_provider.embed([text])[0],
    )


def test_store_lives_under_hashed_scope_dir(root_dir: Path, store: VectorStore) -> None:
    path = get_scope_index_path(root_dir, SCOPE_ID)
    assert path == root_dir / "memory" / "scopes" / hash_scope_id(SCOPE_ID) / "semantic.db"
    assert path.exists()
    assert store.get_meta_value("embedding_provider") == "hashed"
    assert store.get_meta_value("embedding_dimensions") == str(DIMENSIONS)


def test_reopen_with_different_embedding_fails(root_dir: Path, store: VectorStore) -> None:
    store.close()
    with pytest.raises(EmbeddingConfigMismatch) as excinfo:
        VectorStore.open(root_dir, SCOPE_ID, EmbeddingSpec("hashed", "hashed-bow", DIMENSIONS * 2))
    assert excinfo.value.field == "dimensions"

    reopened = VectorStore.open(root_dir, SCOPE_ID, EmbeddingSpec("hashed", "hashed-bow", DIMENSIONS))
    reopened.close()


def test_file_ledger_round_trip(store: VectorStore) -> None:
    assert store.get_file("notes.md") is None
    store.upsert_file("notes.md", "abc", 1000, chunk_count=2)
    record = store.get_file("notes.md")
    assert record is not None
    assert (record.hash, record.updated_at, record.chunk_count) == ("abc", 1000, 2)
    assert [item.path for item in store.list_files()] == ["notes.md"]

    store.delete_file("notes.md")
    assert store.list_files() == []


def test_embedding_cache_is_keyed_by_content_hash(store: VectorStore) -> None:
    assert store.get_embedding_cache("missing") is None
    store.upsert_embedding_cache("h1", [1.0] + [0.0] * (DIMENSIONS - 1))
    cached = store.get_embedding_cache("h1")
    assert cached is not None
    assert cached[0] == 1.0
    assert store.stats().cached_embeddings == 1


def test_insert_and_search_active_chunks(store: VectorStore) -> None:
    ids = store.insert_chunks([_chunk("a", "the quick brown fox"), _chunk("b", "lazy dogs sleep all day", start=2)])
    assert len(ids) == 2

    vector_hits = store.vector_search(_provider.embed(["quick brown fox"])[0], limit=2)
    assert vector_hits[0].chunk_idx == ids[0]
    assert vector_hits[0].distance < vector_hits[1].distance

    text_hits = store.text_search("Fox?!", limit=5)
    assert [hit.chunk_idx for hit in text_hits] == [ids[0]]
    assert text_hits[0].path == "notes.md"

    active = store.get_active_chunks_for_path("notes.md")
    assert [chunk.chunk_id for chunk in active] == ["a", "b"]
    assert len(active[0].embedding) == DIMENSIONS


def test_superseded_chunks_leave_every_search_path(store: VectorStore) -> None:
    old_idx, new_idx = store.insert_chunks([_chunk("old", "alpha beta"), _chunk("new", "alpha gamma", start=2)])
    store.supersede_chunks([old_idx], new_idx)

    assert store.get_superseded_by(old_idx) == new_idx
    assert [chunk.chunk_idx for chunk in store.get_active_chunks_for_path("notes.md")] == [new_idx]
    assert all(hit.chunk_idx != old_idx for hit in store.text_search("beta alpha", limit=10))
    assert all(hit.chunk_idx != old_idx for hit in store.vector_search(_provider.embed(["alpha beta"])[0], 10))
    stats = store.stats()
    assert (stats.active_chunks, stats.superseded_chunks) == (1, 1)


def test_chunk_id_can_return_after_supersede(store: VectorStore) -> None:
    (first,) = store.insert_chunks([_chunk("same", "text one")])
    store.supersede_chunks([first], None)
    (second,) = store.insert_chunks([_chunk("same", "text one")])
    assert second != first

    with pytest.raises(StoreError):
        store.insert_chunks([_chunk("same", "text one")])


def test_insert_ignoring_conflicts_returns_existing_ids(store: VectorStore) -> None:
    (existing,) = store.insert_chunks([_chunk("t1", "hello there")])
    ids = store.insert_chunks_ignore_conflicts([_chunk("t1", "hello there"), _chunk("t2", "general kenobi", start=2)])
    assert ids[0] == existing
    assert store.stats().active_chunks == 2


def test_wrong_dimension_chunk_is_rejected(store: VectorStore) -> None:
    bad = _chunk("bad", "text")
    bad.embedding = [1.0, 0.0]
    with pytest.raises(StoreError):
        store.insert_chunks([bad])


def test_mark_access_counts_and_neighbors(store: VectorStore) -> None:
    ids = store.insert_chunks([_chunk(f"c{idx}", f"chunk number {idx}", start=idx * 10) for idx in range(4)])
    store.mark_access([ids[1], ids[1]])
    store.mark_access([ids[1]])
    hit = next(item for item in store.text_search("chunk", 10) if item.chunk_idx == ids[1])
    assert hit.access_count == 2
    assert hit.last_accessed_at is not None

    neighbors = store.neighbor_chunks(ids[1], window=1)
    assert [row.chunk_idx for row in neighbors] == [ids[0], ids[2]]


def test_vector_index_is_rebuilt_on_open(root_dir: Path, store: VectorStore, embedding_spec: EmbeddingSpec) -> None:
    (idx,) = store.insert_chunks([_chunk("persisted", "persistent memory")])
    store.close()
    reopened = VectorStore.open(root_dir, SCOPE_ID, embedding_spec)
    try:
        hits = reopened.vector_search(_provider.embed(["persistent memory"])[0], limit=1)
        assert hits[0].chunk_idx == idx
        assert hits[0].distance == pytest.approx(0.0, abs=1e-2)
    finally:
        reopened.close()


def test_fts_query_sanitising() -> None:
    assert build_fts_query('X" (y* x') == '"x" OR "y"'
    assert build_fts_query("?!") is None


class LockCheckingIndex(VectorIndex):
    """Records whether another thread could take the store lock during each mutation."""

    def __init__(self, dim: int, lock) -> None:
        super().__init__(dim)
        self.lock = lock
        self.contended: list[bool] = []

    def _other_thread_blocked(self) -> bool:
        result: list[bool] = []

        def try_lock() -> None:
            acquired = self.lock.acquire(blocking=False)
            if acquired:
                self.lock.release()
            result.append(not acquired)

        worker = threading.Thread(target=try_lock)
        worker.start()
        worker.join(timeout=5)
        return result == [True]

    def upsert(self, ids, vectors) -> None:
        self.contended.append(self._other_thread_blocked())
        super().upsert(ids, vectors)

    def remove(self, ids) -> None:
        self.contended.append(self._other_thread_blocked())
        super().remove(ids)


def test_index_mutations_hold_the_store_lock(store: VectorStore) -> None:
    store.index = LockCheckingIndex(DIMENSIONS, store.db.lock)
    (idx,) = store.insert_chunks([_chunk("notes.md:1-1:a", "locked write")])
    store.supersede_chunks([idx])
    assert store.index.contended == [True, True]
    assert store.index.size == 0
