"""Monotonic millisecond ticks shared by the scheduler and the watchers."""

from __future__ import annotations

import time

__all__ = ["now_ticks", "ticks_until"]


def now_ticks() -> int:
    """Return the current monotonic time in whole milliseconds."""
    return time.monotonic_ns() // 1_000_000


def ticks_until(due_ticks: int) -> int:
    """Return milliseconds remaining until ``due_ticks`` (never negative)."""
    return max(due_ticks - now_ticks(), 0)
