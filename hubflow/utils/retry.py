from __future__ import annotations

import asyncio
import random

from ..config import EngineConfig


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter, in seconds."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_delay(attempt: int, config: EngineConfig) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    base = config.retry_delay_ms / 1000
    if config.retry_backoff == "exponential":
        return base * compute_backoff(attempt - 1, base=2.0, jitter=0.0) + random.uniform(
            0, base / 2
        )
    return base


async def schedule_retry(attempt: int, config: EngineConfig) -> None:
    """Sleep for the configured delay before retrying."""
    delay = retry_delay(attempt, config)
    if delay > 0:
        await asyncio.sleep(delay)
