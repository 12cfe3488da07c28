"""Text processing helpers."""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4
SNIPPET_LENGTH = 240


def estimate_tokens(text: str) -> int:
    """Cheap deterministic token estimate: one token per four characters."""
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def make_snippet(content: str, max_length: int = SNIPPET_LENGTH) -> str:
    """Truncate ``content`` for display, marking the cut with an ellipsis."""
    if len(content) <= max_length:
        return content
    return f"{content[:max_length].strip()}…"
