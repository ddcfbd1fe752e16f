from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int,
    base_ms: int = 1000,
    factor: float = 2.0,
    jitter_ms: int = 250,
    max_ms: int = 30_000,
) -> int:
    """Compute exponential backoff in milliseconds with jitter."""
    delay = base_ms * factor ** max(attempt - 1, 0)
    delay += random.uniform(0, jitter_ms)
    return int(min(delay, max_ms))


async def schedule_retry(delay_ms: int) -> None:
    """Sleep for ``delay_ms`` before retrying."""
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)
