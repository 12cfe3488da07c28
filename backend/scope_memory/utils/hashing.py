"""Hashing utilities."""

from __future__ import annotations

import hashlib


def sha256_bytes(data: bytes) -> str:
    """Return hex digest for bytes input."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Return hex digest of the UTF-8 encoding of ``text``."""
    return sha256_bytes(text.encode("utf-8"))


def short_hash(text: str, length: int = 16) -> str:
    """Leading hex characters of the text digest, used inside chunk ids."""
    return sha256_text(text)[:length]


def hash_scope_id(scope_id: str) -> str:
    """Filesystem-safe directory name for a scope."""
    return sha256_text(scope_id)
