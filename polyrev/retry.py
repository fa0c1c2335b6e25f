"""Bounded retries with jittered exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay_ms(base_ms: int, retry_index: int) -> float:
    """Delay before the retry following the `retry_index`-th failure (0-based)."""
    if base_ms <= 0:
        return 0.0
    return base_ms * (2**retry_index) + random.uniform(0, base_ms)


async def retry_with_backoff(
    config: RetryConfig,
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `operation()` until it succeeds or `max_attempts` calls have failed.

    The last exception is re-raised as-is once attempts run out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if attempt >= config.max_attempts:
                logger.debug("Giving up after %d attempt(s): %s", attempt, e)
                raise
            delay_ms = backoff_delay_ms(config.backoff_base_ms, attempt - 1)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.0fms",
                attempt,
                config.max_attempts,
                e,
                delay_ms,
            )
            await sleep(delay_ms / 1000)
