"""Incremental sync of a scope's sources into its store."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Protocol, Sequence

from scope_memory.core.errors import SyncError
from scope_memory.core.logging import get_logger, log_context
from scope_memory.core.metrics import SYNC_COUNT, SYNC_DURATION
from scope_memory.db.store import VectorStore, get_scope_dir
from scope_memory.ingest.chunker import chunk_markdown
from scope_memory.ingest.embeddings import Embedder
from scope_memory.ingest.transcript_chunker import chunk_transcript
from scope_memory.ingest.transcript_reader import read_transcript_after_offset, transcript_index_path
from scope_memory.ingest.types import Chunk, ChunkInsert, SyncStats
from scope_memory.models.entities import ActiveChunk
from scope_memory.retrieval.vector_index import cosine_similarity
from scope_memory.utils.hashing import sha256_text
from scope_memory.utils.time import now_ms

logger = get_logger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.9
DEFAULT_TRANSCRIPT_MAX_LINES = 200

TRANSCRIPT_OFFSET_KEY = "transcript_last_indexed_offset"
TRANSCRIPT_INDEXED_AT_KEY = "transcript_last_indexed_at_ms"


class Syncable(Protocol):
    def sync(self) -> SyncStats: ...


def embed_chunks(
    store: VectorStore,
    embedder: Embedder,
    chunks: Sequence[Chunk],
    stats: SyncStats,
    path: str | None = None,
) -> list[list[float]]:
    """Resolve embeddings for ``chunks`` from the cache, computing the misses in one call.

    Every embedding is written back to the cache, so a later sync of the same
    text never reaches the provider.
    """
    vectors: dict[int, list[float]] = {}
    missing: list[int] = []
    for position, chunk in enumerate(chunks):
        cached = store.get_embedding_cache(chunk.content_hash)
        if cached is None:
            missing.append(position)
        else:
            vectors[position] = cached

    if missing:
        try:
            computed = embedder([chunks[position].text for position in missing])
        except Exception as exc:
            raise SyncError(f"Embedding failed for {len(missing)} chunks", path=path) from exc
        if len(computed) != len(missing):
            raise SyncError(
                f"Embedder returned {len(computed)} vectors for {len(missing)} chunks", path=path
            )
        for position, vector in zip(missing, computed):
            vectors[position] = list(vector)

    stats.embeddings_computed += len(missing)
    stats.embeddings_reused += len(chunks) - len(missing)

    resolved = [vectors[position] for position in range(len(chunks))]
    for chunk, vector in zip(chunks, resolved):
        store.upsert_embedding_cache(chunk.content_hash, vector)
    return resolved


class SyncManager:
    """Bring the store in line with the ``*.md`` files of a scope directory."""

    def __init__(
        self,
        root_dir: Path,
        scope_id: str,
        store: VectorStore,
        embedder: Embedder,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        scope_dir: Path | None = None,
        chunk_options: dict[str, int] | None = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.scope_id = scope_id
        self.store = store
        self.embedder = embedder
        self.similarity_threshold = similarity_threshold
        self.scope_dir = Path(scope_dir) if scope_dir else get_scope_dir(self.root_dir, scope_id)
        self.chunk_options = dict(chunk_options or {})

    def sync(self) -> SyncStats:
        stats = SyncStats()
        started = time.perf_counter()
        try:
            with self.store.db.lock:
                current = self._list_source_files()
                for record in self.store.list_files():
                    if record.path not in current:
                        self._remove_file(record.path, stats)
                for path, file_path in sorted(current.items()):
                    self._sync_file(path, file_path, stats)
        except Exception:
            SYNC_COUNT.labels(status="error").inc()
            raise
        SYNC_COUNT.labels(status="ok").inc()
        SYNC_DURATION.observe(time.perf_counter() - started)
        logger.info(
            "Synced %s files (%s skipped, %s removed), %s chunks inserted, %s superseded",
            stats.files_indexed,
            stats.files_skipped,
            stats.files_removed,
            stats.chunks_inserted,
            stats.chunks_superseded,
            extra=log_context(scope=self.store.scope_label, **stats.to_dict()),
        )
        return stats

    def _list_source_files(self) -> dict[str, Path]:
        if not self.scope_dir.is_dir():
            return {}
        return {
            entry.name: entry
            for entry in self.scope_dir.iterdir()
            if entry.is_file() and entry.suffix.lower() == ".md"
        }

    def _remove_file(self, path: str, stats: SyncStats) -> None:
        active = self.store.get_active_chunks_for_path(path)
        self.store.supersede_chunks([chunk.chunk_idx for chunk in active], None)
        self.store.delete_file(path)
        stats.files_removed += 1
        stats.chunks_superseded += len(active)
        logger.debug("Removed %s (%s chunks retired)", path, len(active))

    def _sync_file(self, path: str, file_path: Path, stats: SyncStats) -> None:
        text = file_path.read_text(encoding="utf-8")
        digest = sha256_text(text)
        record = self.store.get_file(path)
        if record is not None and record.hash == digest:
            stats.files_skipped += 1
            logger.debug("Skipping unchanged %s", path)
            return

        chunks = chunk_markdown(path, text, **self.chunk_options)
        embeddings = embed_chunks(self.store, self.embedder, chunks, stats, path=path)
        old_chunks = self.store.get_active_chunks_for_path(path)
        old_ids = {chunk.chunk_id for chunk in old_chunks}

        to_insert: list[ChunkInsert] = []
        retained = 0
        for chunk, embedding in zip(chunks, embeddings):
            if chunk.id in old_ids:
                old_ids.discard(chunk.id)
                retained += 1
                continue
            to_insert.append(ChunkInsert.from_chunk(chunk, embedding))

        inserted_ids = self.store.insert_chunks(to_insert)
        stale = [chunk for chunk in old_chunks if chunk.chunk_id in old_ids]
        superseded = self._supersede_with_lineage(stale, inserted_ids, to_insert)

        updated_at = int(file_path.stat().st_mtime * 1000)
        self.store.upsert_file(path, digest, updated_at, chunk_count=len(chunks))

        stats.files_indexed += 1
        stats.chunks_inserted += len(inserted_ids)
        stats.chunks_retained += retained
        stats.chunks_superseded += superseded
        logger.debug(
            "Indexed %s: %s inserted, %s retained, %s superseded",
            path,
            len(inserted_ids),
            retained,
            superseded,
        )

    def _supersede_with_lineage(
        self,
        stale: Sequence[ActiveChunk],
        inserted_ids: Sequence[int],
        inserted: Sequence[ChunkInsert],
    ) -> int:
        """Retire ``stale`` chunks, linking each to its closest replacement."""
        if not stale:
            return 0
        groups: dict[int | None, list[int]] = {}
        for old in stale:
            target: int | None = None
            best = -1.0
            for new_idx, new_chunk in zip(inserted_ids, inserted):
                similarity = cosine_similarity(old.embedding, new_chunk.embedding)
                if similarity > best:
                    best, target = similarity, new_idx
            if best < self.similarity_threshold:
                target = None
            groups.setdefault(target, []).append(old.chunk_idx)
        for target, ids in groups.items():
            self.store.supersede_chunks(ids, target)
        return len(stale)


class TranscriptSyncManager:
    """Append new transcript records to the store, resuming from a stored offset."""

    def __init__(
        self,
        root_dir: Path,
        scope_id: str,
        store: VectorStore,
        embedder: Embedder,
        max_new_lines_per_sync: int = DEFAULT_TRANSCRIPT_MAX_LINES,
        chunk_options: dict[str, int] | None = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.scope_id = scope_id
        self.store = store
        self.embedder = embedder
        self.max_new_lines_per_sync = max_new_lines_per_sync
        self.chunk_options = dict(chunk_options or {})

    def sync(self) -> SyncStats:
        stats = SyncStats()
        with self.store.db.lock:
            raw_offset = self.store.get_meta_value(TRANSCRIPT_OFFSET_KEY)
            offset = int(raw_offset) if raw_offset else 0
            result = read_transcript_after_offset(
                self.root_dir,
                self.scope_id,
                offset,
                max_lines=self.max_new_lines_per_sync,
            )
            if not result.lines:
                return stats

            path = transcript_index_path(self.scope_id)
            chunks = chunk_transcript(self.scope_id, path, result.lines, **self.chunk_options)
            if chunks:
                embeddings = embed_chunks(self.store, self.embedder, chunks, stats, path=path)
                rows = [ChunkInsert.from_chunk(chunk, vector) for chunk, vector in zip(chunks, embeddings)]
                before = self.store.stats().active_chunks
                self.store.insert_chunks_ignore_conflicts(rows)
                added = self.store.stats().active_chunks - before
                stats.chunks_inserted += added
                stats.chunks_retained += len(rows) - added
                stats.files_indexed += 1

            self.store.set_meta_value(TRANSCRIPT_OFFSET_KEY, str(result.end_offset))
            self.store.set_meta_value(TRANSCRIPT_INDEXED_AT_KEY, str(now_ms()))
        logger.debug(
            "Indexed transcript lines %s-%s into %s chunks",
            offset,
            result.end_offset,
            len(chunks),
            extra=log_context(scope=self.store.scope_label),
        )
        return stats


class CompositeSyncManager:
    """Run several sync managers in order and merge their statistics."""

    def __init__(self, managers: Sequence[Syncable]) -> None:
        self.managers = list(managers)

    def sync(self) -> SyncStats:
        total = SyncStats()
        for manager in self.managers:
            total.merge(manager.sync())
        return total


__all__ = [
    "CompositeSyncManager",
    "SyncManager",
    "Syncable",
    "TranscriptSyncManager",
    "embed_chunks",
]
