"""
Retry helpers for transient storage failures.

Only TransientError is retried. Every other ledger error is a definite
answer and propagates immediately.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from .config import Config
from .errors import TransientError

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    jitter: float = 0.1,
) -> float:
    """Exponential backoff for the given 1-based attempt, capped and jittered."""
    base_delay = Config.RETRY_BASE_DELAY if base_delay is None else base_delay
    max_delay = Config.RETRY_MAX_DELAY if max_delay is None else max_delay
    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay * jitter)


async def retry_transient(
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    operation: str = "",
    **kwargs,
) -> Any:
    """Await func(*args, **kwargs), retrying on TransientError with backoff."""
    attempts = attempts or Config.MAX_RETRIES
    label = operation or getattr(func, "__name__", "operation")

    for attempt in range(1, attempts + 1):
        try:
            return await func(*args, **kwargs)
        except TransientError as e:
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} hit a transient failure (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await asyncio.sleep(delay)
