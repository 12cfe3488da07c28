"""Exchange-aligned chunking of conversation transcripts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from scope_memory.ingest.types import Chunk, TranscriptLine
from scope_memory.utils.hashing import short_hash
from scope_memory.utils.text import estimate_tokens

DEFAULT_TARGET_TOKENS = 300
DEFAULT_MIN_TOKENS = 120
DEFAULT_MAX_TOKENS = 520

ACK_PATTERN = re.compile(
    r"^(ok|okay|k|thanks|thx|thank you|lol|haha|nice|sure|yes|yep|yeah|no|nope|got it|cool|great"
    r"|\U0001F44D|✅|❤️?|\U0001F64C|\U0001F4AF)[\s!.?]*$",
    re.IGNORECASE,
)

TOOL_ITEM_TYPES = frozenset({"function_call", "function_call_result", "hosted_tool_call"})
_TEXT_PART_TYPES = frozenset({"input_text", "output_text"})


@dataclass(slots=True)
class Exchange:
    """User turn(s) plus the assistant/tool turns answering them."""

    lines: list[TranscriptLine] = field(default_factory=list)
    token_count: int = 0

    def render(self) -> str:
        parts = [text for text in (extract_item_text(line.item) for line in self.lines) if text]
        return "\n".join(parts)


def build_transcript_chunk_id(scope_id: str, start_offset: int, end_offset: int, text: str) -> str:
    return f"{scope_id}:t:{start_offset}-{end_offset}:{short_hash(text)}"


def _content_parts(content: Any) -> list[str] | None:
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping) and part.get("type") in _TEXT_PART_TYPES:
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return parts
    return None


def extract_item_text(item: Mapping[str, Any]) -> str | None:
    """Render one transcript item to text, or ``None`` if it has no rendering."""
    item_type = item.get("type")
    if item_type == "message":
        role = "Assistant" if item.get("role") == "assistant" else "User"
        parts = _content_parts(item.get("content"))
        if not parts:
            return None
        return f"[{role}] " + "\n".join(parts)

    name = item.get("name")
    if not name:
        return None
    if item_type == "function_call":
        return f"[Tool Call: {name}]"
    if item_type == "function_call_result":
        return f"[Tool Result: {name}]"
    if item_type == "hosted_tool_call":
        return f"[Tool: {name}]"
    return None


def is_ack_only(item: Mapping[str, Any]) -> bool:
    """True for short acknowledgement messages such as "ok" or "thanks!"."""
    if item.get("type") != "message":
        return False
    parts = _content_parts(item.get("content"))
    text = " ".join(parts) if parts else ""
    if not text:
        return True
    return ACK_PATTERN.match(text.strip()) is not None


def _is_user_message(item: Mapping[str, Any]) -> bool:
    return item.get("type") == "message" and item.get("role") == "user"


def _is_response(item: Mapping[str, Any]) -> bool:
    return item.get("role") == "assistant" or item.get("type") in ("function_call_result", "hosted_tool_call")


def build_exchanges(lines: Sequence[TranscriptLine]) -> list[Exchange]:
    """Group transcript lines into exchanges."""
    exchanges: list[Exchange] = []
    current = Exchange()
    seen_user = False
    answered = False

    for line in lines:
        if _is_user_message(line.item) and answered:
            exchanges.append(_sealed(current))
            current = Exchange()
            seen_user = False
            answered = False

        current.lines.append(line)
        if _is_user_message(line.item):
            seen_user = True
        if seen_user and _is_response(line.item):
            answered = True

    if current.lines:
        exchanges.append(_sealed(current))
    return exchanges


def _sealed(exchange: Exchange) -> Exchange:
    exchange.token_count = estimate_tokens(exchange.render())
    return exchange


def is_exchange_ack_only(exchange: Exchange) -> bool:
    return all(is_ack_only(line.item) or line.item.get("type") in TOOL_ITEM_TYPES for line in exchange.lines)


def chunk_transcript(
    scope_id: str,
    path: str,
    lines: Sequence[TranscriptLine],
    target_tokens: int = DEFAULT_TARGET_TOKENS,
    min_tokens: int = DEFAULT_MIN_TOKENS,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> list[Chunk]:
    """Chunk transcript lines along exchange boundaries.

    Acknowledgement-only exchanges are folded into the running buffer and never
    open a chunk of their own. Unlike markdown chunks there is no overlap.
    """
    chunks: list[Chunk] = []
    buffer: list[Exchange] = []
    buffer_tokens = 0

    for exchange in build_exchanges(lines):
        if is_exchange_ack_only(exchange) or not exchange.render():
            if buffer:
                buffer.append(exchange)
                buffer_tokens += exchange.token_count
            continue

        if buffer and buffer_tokens + exchange.token_count > max_tokens and buffer_tokens >= min_tokens:
            chunks.append(_finalize_chunk(scope_id, path, buffer))
            buffer, buffer_tokens = [], 0

        buffer.append(exchange)
        buffer_tokens += exchange.token_count

        if buffer_tokens >= target_tokens and buffer_tokens >= min_tokens:
            chunks.append(_finalize_chunk(scope_id, path, buffer))
            buffer, buffer_tokens = [], 0

    if buffer:
        chunks.append(_finalize_chunk(scope_id, path, buffer))
    return chunks


def _finalize_chunk(scope_id: str, path: str, buffer: Sequence[Exchange]) -> Chunk:
    start_offset = buffer[0].lines[0].offset
    end_offset = buffer[-1].lines[-1].offset
    text = "\n\n".join(exchange.render() for exchange in buffer)
    return Chunk(
        id=build_transcript_chunk_id(scope_id, start_offset, end_offset, text),
        path=path,
        start_line=start_offset,
        end_line=end_offset,
        text=text,
        token_count=estimate_tokens(text),
    )


__all__ = [
    "Exchange",
    "build_exchanges",
    "build_transcript_chunk_id",
    "chunk_transcript",
    "extract_item_text",
    "is_ack_only",
    "is_exchange_ack_only",
]
