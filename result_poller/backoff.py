"""
Deterministic backoff schedule for result polling.
"""

from __future__ import annotations

from typing import Iterator

DEFAULT_MAX_ATTEMPTS = 60
DEFAULT_CAP_MS = 15000
MIN_DELAY_MS = 2000


def backoff_delays(max_attempts: int = DEFAULT_MAX_ATTEMPTS, cap_ms: int = DEFAULT_CAP_MS) -> Iterator[int]:
    """
    Yield millisecond delays 2000, 2000, 3000, 5000, 8000, 13000, then cap_ms.

    Fibonacci growth with a 2s floor so the first ticks stay responsive and the
    ceiling bounds how late a finished job is noticed. Exactly max_attempts
    values are produced; running out means the session timed out.
    """
    a, b = 1000, 1000
    for _ in range(max(0, int(max_attempts))):
        yield min(max(b, MIN_DELAY_MS), cap_ms)
        a, b = b, a + b
