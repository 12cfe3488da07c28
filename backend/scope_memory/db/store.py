"""Per-scope durable store: file ledger, chunks, embedding cache and indexes."""

from __future__ import annotations

import re
import sqlite3
from pathlib import Path
from typing import Sequence

from scope_memory.core.errors import EmbeddingConfigMismatch, StoreError
from scope_memory.core.logging import get_logger, log_context
from scope_memory.core.metrics import ACTIVE_CHUNKS
from scope_memory.db.sqlite import SQLiteDatabase, placeholders
from scope_memory.ingest.embeddings import vector_from_bytes, vector_to_bytes
from scope_memory.ingest.types import ChunkInsert
from scope_memory.models.entities import (
    ActiveChunk,
    ChunkRow,
    EmbeddingSpec,
    FileRecord,
    StoreStats,
    TextHit,
    VectorHit,
)
from scope_memory.retrieval.vector_index import VectorIndex
from scope_memory.utils.hashing import hash_scope_id
from scope_memory.utils.time import now_ms

logger = get_logger(__name__)

SCHEMA_VERSION = 1
MAX_QUERY_TERMS = 32

_QUERY_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_ROW_COLUMNS = """
  chunks.chunk_idx AS chunk_idx,
  chunks.content AS content,
  chunks.path AS path,
  chunks.updated_at AS updated_at,
  chunks.access_count AS access_count,
  chunks.last_accessed_at AS last_accessed_at,
  chunks.start_line AS start_line,
  chunks.end_line AS end_line
"""


def get_scope_dir(root_dir: Path, scope_id: str) -> Path:
    return Path(root_dir) / "memory" / "scopes" / hash_scope_id(scope_id)


def get_scope_index_path(root_dir: Path, scope_id: str) -> Path:
    return get_scope_dir(root_dir, scope_id) / "semantic.db"


def build_fts_query(query: str) -> str | None:
    """Reduce free text to an FTS5 expression of quoted, OR-ed word tokens."""
    seen: set[str] = set()
    terms: list[str] = []
    for token in _QUERY_TOKEN_RE.findall(query.lower()):
        if token in seen:
            continue
        seen.add(token)
        terms.append(f'"{token}"')
        if len(terms) >= MAX_QUERY_TERMS:
            break
    return " OR ".join(terms) if terms else None


def validate_metadata(meta: dict[str, str], embedding: EmbeddingSpec) -> None:
    provider = meta.get("embedding_provider")
    model = meta.get("embedding_model")
    dims = meta.get("embedding_dimensions")
    if provider and provider != embedding.provider:
        raise EmbeddingConfigMismatch("provider", provider, embedding.provider)
    if model and model != embedding.model:
        raise EmbeddingConfigMismatch("model", model, embedding.model)
    if dims and int(dims) != embedding.dimensions:
        raise EmbeddingConfigMismatch("dimensions", dims, str(embedding.dimensions))


class VectorStore:
    """All durable state for one scope behind a small operation set.

    Chunks are append-only. Superseded rows stay in ``chunks`` for lineage but
    are removed from the full-text and vector indexes, and every read path
    filters on ``superseded_at IS NULL``.
    """

    def __init__(self, db: SQLiteDatabase, embedding: EmbeddingSpec, scope_label: str = "") -> None:
        self.db = db
        self.embedding = embedding
        self.scope_label = scope_label
        self.index = VectorIndex(dim=embedding.dimensions)

    @classmethod
    def open(
        cls,
        root_dir: Path,
        scope_id: str,
        embedding: EmbeddingSpec,
        db_path: Path | None = None,
    ) -> "VectorStore":
        path = db_path or get_scope_index_path(root_dir, scope_id)
        db = SQLiteDatabase(path)
        store = cls(db, embedding, scope_label=hash_scope_id(scope_id)[:12])
        try:
            db.ensure_fts5()
            db.ensure_schema()
            store._ensure_metadata()
        except Exception:
            db.close()
            raise
        store.index.rebuild(db)
        store._update_gauge()
        logger.debug(
            "Opened store %s with %s active vectors",
            path,
            store.index.size,
            extra=log_context(scope=store.scope_label),
        )
        return store

    def close(self) -> None:
        with self.db.lock:
            self.db.close()

    def __enter__(self) -> "VectorStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Metadata ---------------------------------------------------------

    def _ensure_metadata(self) -> None:
        meta = self._get_meta()
        if not meta:
            self._set_meta(
                {
                    "schema_version": str(SCHEMA_VERSION),
                    "embedding_provider": self.embedding.provider,
                    "embedding_model": self.embedding.model,
                    "embedding_dimensions": str(self.embedding.dimensions),
                }
            )
            return
        validate_metadata(meta, self.embedding)

    def _get_meta(self) -> dict[str, str]:
        rows = self.db.query("SELECT key, value FROM meta")
        return {str(row["key"]): str(row["value"]) for row in rows}

    def _set_meta(self, values: dict[str, str]) -> None:
        with self.db.transaction() as cursor:
            cursor.executemany(
                "INSERT INTO meta(key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                list(values.items()),
            )

    def get_meta_value(self, key: str) -> str | None:
        with self.db.lock:
            row = self.db.execute("SELECT value FROM meta WHERE key = ?", [key]).fetchone()
        return str(row["value"]) if row else None

    def set_meta_value(self, key: str, value: str) -> None:
        self._set_meta({key: value})

    # File ledger ------------------------------------------------------

    def list_files(self) -> list[FileRecord]:
        with self.db.lock:
            rows = self.db.query("SELECT path, hash, updated_at, last_indexed_at, chunk_count FROM files")
        return [_file_record(row) for row in rows]

    def get_file(self, path: str) -> FileRecord | None:
        with self.db.lock:
            row = self.db.execute(
                "SELECT path, hash, updated_at, last_indexed_at, chunk_count FROM files WHERE path = ?",
                [path],
            ).fetchone()
        return _file_record(row) if row else None

    def upsert_file(self, path: str, hash: str, updated_at: int, chunk_count: int = 0) -> None:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO files(path, hash, updated_at, last_indexed_at, chunk_count)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                  hash = excluded.hash,
                  updated_at = excluded.updated_at,
                  last_indexed_at = excluded.last_indexed_at,
                  chunk_count = excluded.chunk_count
                """,
                [path, hash, int(updated_at), now_ms(), chunk_count],
            )

    def delete_file(self, path: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM files WHERE path = ?", [path])

    # Embedding cache --------------------------------------------------

    def get_embedding_cache(self, content_hash: str) -> list[float] | None:
        spec = self.embedding
        with self.db.lock:
            row = self.db.execute(
                """
                SELECT embedding FROM embedding_cache
                WHERE content_hash = ? AND provider = ? AND model = ? AND dimensions = ?
                """,
                [content_hash, spec.provider, spec.model, spec.dimensions],
            ).fetchone()
        return vector_from_bytes(row["embedding"]) if row else None

    def upsert_embedding_cache(self, content_hash: str, embedding: Sequence[float]) -> None:
        spec = self.embedding
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO embedding_cache(content_hash, provider, model, dimensions, embedding, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(content_hash, provider, model, dimensions) DO UPDATE SET
                  embedding = excluded.embedding,
                  created_at = excluded.created_at
                """,
                [content_hash, spec.provider, spec.model, spec.dimensions, vector_to_bytes(embedding), now_ms()],
            )

    # Chunks -----------------------------------------------------------

    def get_active_chunks_for_path(self, path: str) -> list[ActiveChunk]:
        with self.db.lock:
            rows = self.db.query(
                """
                SELECT chunk_idx, chunk_id, content_hash, embedding, start_line, end_line
                FROM chunks
                WHERE path = ? AND superseded_at IS NULL
                ORDER BY start_line, chunk_idx
                """,
                [path],
            )
        return [
            ActiveChunk(
                chunk_idx=int(row["chunk_idx"]),
                chunk_id=str(row["chunk_id"]),
                content_hash=str(row["content_hash"]),
                embedding=vector_from_bytes(row["embedding"]),
                start_line=int(row["start_line"]),
                end_line=int(row["end_line"]),
            )
            for row in rows
        ]

    def insert_chunks(self, chunks: Sequence[ChunkInsert]) -> list[int]:
        """Insert chunks and index them; returns the assigned chunk indexes."""
        return self._insert(chunks, ignore_conflicts=False)

    def insert_chunks_ignore_conflicts(self, chunks: Sequence[ChunkInsert]) -> list[int]:
        """Like ``insert_chunks`` but an already-active ``chunk_id`` keeps its row."""
        return self._insert(chunks, ignore_conflicts=True)

    def _insert(self, chunks: Sequence[ChunkInsert], ignore_conflicts: bool) -> list[int]:
        if not chunks:
            return []
        for chunk in chunks:
            if len(chunk.embedding) != self.embedding.dimensions:
                raise StoreError(
                    f"Chunk {chunk.chunk_id} has {len(chunk.embedding)} dimensions, "
                    f"store expects {self.embedding.dimensions}"
                )

        verb = "INSERT OR IGNORE" if ignore_conflicts else "INSERT"
        spec = self.embedding
        ids: list[int] = []
        fresh: list[tuple[int, list[float]]] = []
        with self.db.lock:
            try:
                with self.db.transaction() as cursor:
                    for chunk in chunks:
                        now = now_ms()
                        payload = vector_to_bytes(chunk.embedding)
                        cursor.execute(
                            f"""
                            {verb} INTO chunks(
                              chunk_id, path, start_line, end_line, content, content_hash, token_count,
                              created_at, updated_at, embedding_provider, embedding_model, embedding_dimensions,
                              embedding
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            [
                                chunk.chunk_id,
                                chunk.path,
                                chunk.start_line,
                                chunk.end_line,
                                chunk.content,
                                chunk.content_hash,
                                chunk.token_count,
                                now,
                                now,
                                spec.provider,
                                spec.model,
                                spec.dimensions,
                                payload,
                            ],
                        )
                        if cursor.rowcount == 0:
                            existing = cursor.execute(
                                "SELECT chunk_idx FROM chunks WHERE chunk_id = ? AND superseded_at IS NULL",
                                [chunk.chunk_id],
                            ).fetchone()
                            ids.append(int(existing["chunk_idx"]))
                            continue
                        chunk_idx = int(cursor.lastrowid)
                        cursor.execute(
                            "INSERT INTO chunks_fts(rowid, content, path) VALUES (?, ?, ?)",
                            [chunk_idx, chunk.content, chunk.path],
                        )
                        cursor.execute(
                            "INSERT INTO chunks_vec(chunk_idx, embedding) VALUES (?, ?)",
                            [chunk_idx, payload],
                        )
                        ids.append(chunk_idx)
                        fresh.append((chunk_idx, chunk.embedding))
            except sqlite3.IntegrityError as exc:
                raise StoreError(f"Chunk insert rejected: {exc}") from exc
            self.index.upsert([idx for idx, _ in fresh], [vector for _, vector in fresh])
        self._update_gauge()
        return ids

    def supersede_chunks(self, chunk_idxs: Sequence[int], superseded_by: int | None = None) -> None:
        """Retire chunks, optionally pointing them at their replacement."""
        ids = [idx for idx in chunk_idxs if idx != superseded_by]
        if not ids:
            return
        marks = placeholders(len(ids))
        with self.db.lock:
            with self.db.transaction() as cursor:
                cursor.execute(
                    f"""
                    UPDATE chunks SET superseded_at = ?, superseded_by = ?
                    WHERE chunk_idx IN ({marks}) AND superseded_at IS NULL
                    """,
                    [now_ms(), superseded_by, *ids],
                )
                cursor.execute(f"DELETE FROM chunks_vec WHERE chunk_idx IN ({marks})", ids)
                cursor.execute(f"DELETE FROM chunks_fts WHERE rowid IN ({marks})", ids)
            self.index.remove(ids)
        self._update_gauge()

    def get_superseded_by(self, chunk_idx: int) -> int | None:
        with self.db.lock:
            row = self.db.execute("SELECT superseded_by FROM chunks WHERE chunk_idx = ?", [chunk_idx]).fetchone()
        if row is None or row["superseded_by"] is None:
            return None
        return int(row["superseded_by"])

    # Search -----------------------------------------------------------

    def vector_search(self, embedding: Sequence[float], limit: int) -> list[VectorHit]:
        """Nearest active chunks by L2 distance over normalised vectors."""
        with self.db.lock:
            neighbors = self.index.search(embedding, top_k=limit)
            if not neighbors:
                return []
            rows = self._active_rows([item.chunk_idx for item in neighbors])
        hits: list[VectorHit] = []
        for neighbor in neighbors:
            row = rows.get(neighbor.chunk_idx)
            if row is None:
                continue
            hits.append(VectorHit(**_row_fields(row), distance=neighbor.distance))
        return hits

    def text_search(self, query: str, limit: int) -> list[TextHit]:
        """BM25-ranked keyword matches over active chunks (lower score is better)."""
        match = build_fts_query(query)
        if match is None or limit <= 0:
            return []
        with self.db.lock:
            rows = self.db.query(
                f"""
                WITH hits AS (
                  SELECT rowid AS chunk_idx, bm25(chunks_fts) AS score
                  FROM chunks_fts
                  WHERE chunks_fts MATCH ?
                  ORDER BY score
                  LIMIT ?
                )
                SELECT {_ROW_COLUMNS}, hits.score AS score
                FROM hits
                JOIN chunks ON chunks.chunk_idx = hits.chunk_idx
                WHERE chunks.superseded_at IS NULL
                ORDER BY hits.score ASC
                """,
                [match, limit],
            )
        return [TextHit(**_row_fields(row), score=float(row["score"])) for row in rows]

    def neighbor_chunks(self, chunk_idx: int, window: int = 1) -> list[ChunkRow]:
        """Active chunks of the same file adjacent to ``chunk_idx`` in line order."""
        with self.db.lock:
            anchor = self.db.execute(
                "SELECT path FROM chunks WHERE chunk_idx = ? AND superseded_at IS NULL", [chunk_idx]
            ).fetchone()
            if anchor is None:
                return []
            rows = self.db.query(
                f"""
                SELECT {_ROW_COLUMNS}
                FROM chunks
                WHERE chunks.path = ? AND chunks.superseded_at IS NULL
                ORDER BY chunks.start_line, chunks.chunk_idx
                """,
                [anchor["path"]],
            )
        ordered = [int(row["chunk_idx"]) for row in rows]
        position = ordered.index(chunk_idx)
        lower = max(0, position - window)
        upper = position + window + 1
        return [
            ChunkRow(**_row_fields(row))
            for offset, row in enumerate(rows[lower:upper], start=lower)
            if offset != position
        ]

    def mark_access(self, chunk_idxs: Sequence[int]) -> None:
        ids = list(dict.fromkeys(chunk_idxs))
        if not ids:
            return
        with self.db.transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE chunks
                SET access_count = access_count + 1,
                    last_accessed_at = ?
                WHERE chunk_idx IN ({placeholders(len(ids))})
                """,
                [now_ms(), *ids],
            )

    # Introspection ----------------------------------------------------

    def stats(self) -> StoreStats:
        with self.db.lock:
            row = self.db.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM files) AS files,
                  (SELECT COUNT(*) FROM chunks WHERE superseded_at IS NULL) AS active_chunks,
                  (SELECT COUNT(*) FROM chunks WHERE superseded_at IS NOT NULL) AS superseded_chunks,
                  (SELECT COUNT(*) FROM embedding_cache) AS cached_embeddings
                """
            ).fetchone()
        return StoreStats(
            files=int(row["files"]),
            active_chunks=int(row["active_chunks"]),
            superseded_chunks=int(row["superseded_chunks"]),
            cached_embeddings=int(row["cached_embeddings"]),
        )

    def _active_rows(self, ids: Sequence[int]) -> dict[int, sqlite3.Row]:
        rows = self.db.query(
            f"""
            SELECT {_ROW_COLUMNS}
            FROM chunks
            WHERE chunks.chunk_idx IN ({placeholders(len(ids))}) AND chunks.superseded_at IS NULL
            """,
            list(ids),
        )
        return {int(row["chunk_idx"]): row for row in rows}

    def _update_gauge(self) -> None:
        ACTIVE_CHUNKS.labels(scope=self.scope_label).set(self.index.size)


def _file_record(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        path=str(row["path"]),
        hash=str(row["hash"]),
        updated_at=int(row["updated_at"]),
        last_indexed_at=int(row["last_indexed_at"]),
        chunk_count=int(row["chunk_count"]),
    )


def _row_fields(row: sqlite3.Row) -> dict[str, object]:
    return {
        "chunk_idx": int(row["chunk_idx"]),
        "content": str(row["content"]),
        "path": str(row["path"]),
        "updated_at": int(row["updated_at"]),
        "access_count": int(row["access_count"] or 0),
        "last_accessed_at": int(row["last_accessed_at"]) if row["last_accessed_at"] is not None else None,
        "start_line": int(row["start_line"]),
        "end_line": int(row["end_line"]),
    }


__all__ = [
    "VectorStore",
    "build_fts_query",
    "get_scope_dir",
    "get_scope_index_path",
    "validate_metadata",
]
