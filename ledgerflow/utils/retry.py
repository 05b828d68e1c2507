from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, base: float = 1.0, factor: float = 2.0, jitter: float = 0.5
) -> float:
    """Compute exponential backoff with jitter. A zero ``base`` disables waiting."""
    if base <= 0:
        return 0.0
    delay = base * factor ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int, base: float = 1.0, factor: float = 2.0, jitter: float = 0.5
) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, factor=factor, jitter=jitter)
    if delay:
        await asyncio.sleep(delay)
