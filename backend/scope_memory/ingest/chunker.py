"""Markdown chunking utilities."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from scope_memory.ingest.types import Chunk
from scope_memory.utils.hashing import short_hash
from scope_memory.utils.text import estimate_tokens

DEFAULT_TARGET_TOKENS = 400
DEFAULT_OVERLAP_TOKENS = 80
DEFAULT_MIN_TOKENS = 100
DEFAULT_MAX_TOKENS = 600

FENCE_MARKER = "```"
_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass(slots=True)
class Unit:
    """Atomic piece of a document: a single line or a whole fenced block."""

    text: str
    start_line: int
    end_line: int
    token_count: int
    is_code_block: bool = False


def build_chunk_id(path: str, start_line: int, end_line: int, text: str) -> str:
    return f"{path}:{start_line}-{end_line}:{short_hash(text)}"


def chunk_markdown(
    path: str,
    text: str,
    target_tokens: int = DEFAULT_TARGET_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    min_tokens: int = DEFAULT_MIN_TOKENS,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> list[Chunk]:
    """Split markdown into overlapping, token-bounded chunks.

    Fenced code blocks are never split; an overlap window never starts inside
    one.
    """
    if not text.strip():
        return []

    units = parse_units(text)
    chunks: list[Chunk] = []
    buffer: list[Unit] = []
    buffer_tokens = 0

    for unit in units:
        if buffer and buffer_tokens + unit.token_count > max_tokens and buffer_tokens >= min_tokens:
            if _is_pure_overlap(buffer, chunks):
                buffer = []
            else:
                chunks.append(_finalize_chunk(path, buffer, buffer_tokens))
                buffer = _apply_overlap(buffer, overlap_tokens)
            buffer_tokens = sum(item.token_count for item in buffer)

        buffer.append(unit)
        buffer_tokens += unit.token_count

        if buffer_tokens >= target_tokens and buffer_tokens >= min_tokens:
            chunks.append(_finalize_chunk(path, buffer, buffer_tokens))
            buffer = _apply_overlap(buffer, overlap_tokens)
            buffer_tokens = sum(item.token_count for item in buffer)

    if buffer and not _is_pure_overlap(buffer, chunks):
        chunks.append(_finalize_chunk(path, buffer, buffer_tokens))

    return chunks


def parse_units(text: str) -> list[Unit]:
    """Parse text into line units, folding fenced code blocks into one unit."""
    lines = _LINE_SPLIT_RE.split(text)
    units: list[Unit] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.strip().startswith(FENCE_MARKER):
            start = index
            index += 1
            while index < len(lines):
                closing = lines[index].strip().startswith(FENCE_MARKER)
                index += 1
                if closing:
                    break
            # unclosed fences run to end of file
            block = "\n".join(lines[start:index])
            units.append(
                Unit(
                    text=block,
                    start_line=start + 1,
                    end_line=index,
                    token_count=estimate_tokens(block),
                    is_code_block=True,
                )
            )
            continue

        units.append(
            Unit(
                text=line,
                start_line=index + 1,
                end_line=index + 1,
                token_count=estimate_tokens(line),
            )
        )
        index += 1
    return units


def _finalize_chunk(path: str, units: Sequence[Unit], token_count: int) -> Chunk:
    start_line = units[0].start_line
    end_line = units[-1].end_line
    chunk_text = "\n".join(unit.text for unit in units)
    return Chunk(
        id=build_chunk_id(path, start_line, end_line, chunk_text),
        path=path,
        start_line=start_line,
        end_line=end_line,
        text=chunk_text,
        token_count=token_count,
    )


def _apply_overlap(units: Sequence[Unit], overlap_tokens: int) -> list[Unit]:
    if not units or overlap_tokens <= 0:
        return []
    retained: list[Unit] = []
    token_budget = 0
    for unit in reversed(units):
        if unit.is_code_block and retained:
            break
        retained.append(unit)
        token_budget += unit.token_count
        if token_budget >= overlap_tokens:
            break
    return list(reversed(retained))


def _is_pure_overlap(buffer: Sequence[Unit], chunks: Sequence[Chunk]) -> bool:
    """True when the buffer holds nothing beyond the previous chunk's tail."""
    if not chunks:
        return False
    return buffer[-1].end_line <= chunks[-1].end_line


__all__ = ["Unit", "build_chunk_id", "chunk_markdown", "parse_units"]
