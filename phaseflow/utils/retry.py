from __future__ import annotations

import asyncio
import random

from ..constants import DEFAULT_BACKOFF_BASE, DEFAULT_BACKOFF_JITTER, DEFAULT_MAX_BACKOFF


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    jitter: float = DEFAULT_BACKOFF_JITTER,
    max_delay: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """Compute exponential backoff with jitter, capped at ``max_delay``."""
    if base <= 0:
        return 0.0
    delay = min(base ** attempt, max_delay)
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    jitter: float = DEFAULT_BACKOFF_JITTER,
    max_delay: float = DEFAULT_MAX_BACKOFF,
) -> float:
    """Sleep for computed backoff delay before retrying; returns the delay."""
    delay = compute_backoff(attempt, base=base, jitter=jitter, max_delay=max_delay)
    await asyncio.sleep(delay)
    return delay
