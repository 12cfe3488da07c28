"""Time helpers."""

from __future__ import annotations

import time

MS_PER_DAY = 1000 * 60 * 60 * 24


def now_ms() -> int:
    """Return current timestamp in milliseconds."""
    return int(time.time() * 1000)


def age_days(timestamp_ms: float, now: float | None = None) -> float:
    """Days elapsed since ``timestamp_ms``, clamped at zero."""
    reference = now_ms() if now is None else now
    return max(0.0, (reference - timestamp_ms) / MS_PER_DAY)
