"""Capped exponential backoff used by the readiness handshake."""

from __future__ import annotations


def backoff(attempt: int, base: float, cap: float) -> float:
    """Return the delay in seconds before ``attempt`` (1-based).

    Doubles from ``base`` on every attempt and never exceeds ``cap``.
    """

    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if base < 0 or cap < 0:
        raise ValueError("base and cap must be non-negative")
    # 2**62 is far above any sane cap; avoids huge ints for runaway attempts
    exponent = min(attempt - 1, 62)
    return min(base * (2**exponent), cap)
