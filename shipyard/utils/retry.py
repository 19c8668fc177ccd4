from __future__ import annotations

import random


def compute_backoff(
    attempt: int, initial: float, factor: float = 2.0, jitter: float = 0.1
) -> float:
    """Compute exponential backoff with jitter for the given attempt (1-based)."""
    delay = initial * factor ** max(0, attempt - 1)
    return delay + random.uniform(0, delay * jitter)
