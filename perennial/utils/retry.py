from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Type, TypeVar

from ..config import RetryConfig
from ..errors import StoreFault

T = TypeVar("T")

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base, jitter)
    await asyncio.sleep(delay)


async def retry_store_call(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    fault: Type[StoreFault] = StoreFault,
    config: Optional[RetryConfig] = None,
) -> T:
    """Run ``operation`` retrying transient store faults.

    Raises ``fault`` once ``config.attempts`` attempts have failed.
    """
    config = config or RetryConfig()
    last_error: StoreFault | None = None
    for attempt in range(config.attempts):
        try:
            return await operation()
        except StoreFault as e:
            last_error = e
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{config.attempts}): {e}"
            )
            if attempt + 1 < config.attempts:
                await schedule_retry(attempt, config.base, config.jitter)
    raise fault(
        f"{description} failed after {config.attempts} attempts", cause=last_error
    )
