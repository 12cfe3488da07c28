"""Incremental reader for per-scope JSONL transcripts."""

from __future__ import annotations

import re
from pathlib import Path

import orjson

from scope_memory.ingest.types import TranscriptLine, TranscriptReadResult
from scope_memory.utils.hashing import hash_scope_id

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def get_transcript_path(root_dir: Path, scope_id: str) -> Path:
    return Path(root_dir) / "transcripts" / f"{hash_scope_id(scope_id)}.jsonl"


def transcript_index_path(scope_id: str) -> str:
    """Logical path recorded on transcript chunks."""
    return f"transcripts/{hash_scope_id(scope_id)}.jsonl"


def read_transcript_after_offset(
    root_dir: Path,
    scope_id: str,
    after_offset: int,
    max_lines: int | None = None,
) -> TranscriptReadResult:
    """Read transcript records after ``after_offset`` (a record index).

    Reading stops at the first malformed record so that a half-written line is
    picked up again on the next call. A missing transcript reads as empty.
    """
    offset = max(0, after_offset)
    path = get_transcript_path(root_dir, scope_id)
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return TranscriptReadResult(lines=[], end_offset=offset)

    records = [line for line in _LINE_SPLIT_RE.split(data) if line]
    if offset >= len(records):
        return TranscriptReadResult(lines=[], end_offset=offset)

    window = records[offset : offset + max_lines] if max_lines else records[offset:]
    lines: list[TranscriptLine] = []
    end_offset = offset
    for index, raw in enumerate(window, start=offset):
        try:
            item = orjson.loads(raw)
        except orjson.JSONDecodeError:
            break
        if not isinstance(item, dict):
            break
        lines.append(TranscriptLine(offset=index, item=item))
        end_offset = index + 1

    return TranscriptReadResult(lines=lines, end_offset=end_offset)


__all__ = ["get_transcript_path", "read_transcript_after_offset", "transcript_index_path"]
