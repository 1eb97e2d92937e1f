"""Exponential backoff shared by socket creation and reconnection."""

from __future__ import annotations


def backoff_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """Return ``min(base * 2**attempt, cap)`` for a zero-based attempt."""
    if attempt < 0:
        attempt = 0
    return min(base_s * (2**attempt), cap_s)
