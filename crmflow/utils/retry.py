"""Backoff helpers for retrying flaky channel providers."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300.0


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: float = MAX_BACKOFF_SECONDS,
) -> float:
    """Seconds to wait after failed ``attempt`` (1-based), capped at ``max_delay``."""
    return min(base**attempt, max_delay) + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    await asyncio.sleep(compute_backoff(attempt, base=base, jitter=jitter))


async def retry_async(
    call: Callable[[], Awaitable[bool]],
    label: str,
    max_attempts: int,
    base: float = 1.5,
    jitter: float = 0.5,
) -> bool:
    """Await ``call`` until it returns truthy or ``max_attempts`` run out.

    A falsy result and an exception both count as a failed attempt. The
    exception of the last attempt propagates; otherwise ``False`` is returned.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            if await call():
                return True
            logger.warning(f"{label} attempt {attempt}/{max_attempts} reported failure")
        except Exception as e:
            logger.warning(f"{label} attempt {attempt}/{max_attempts} raised: {e}")
            if attempt == max_attempts:
                raise
        if attempt < max_attempts:
            await schedule_retry(attempt, base=base, jitter=jitter)
    return False
