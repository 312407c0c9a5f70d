"""
Bounded retry with per-attempt timeout and exponential backoff.

Only for idempotent reads (catalog, connection list, health probe).
Actions with side effects must never be routed through here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str,
    timeout: float = 30.0,
    max_attempts: int = 3,
    backoff: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``fn()`` up to *max_attempts* times.

    Each attempt is bounded by *timeout* seconds; between attempts we wait
    ``backoff * 2**attempt`` seconds (1s, 2s, 4s … by default).  The last
    exception is re-raised once attempts are exhausted.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s attempt %d/%d timed out (%.1fs)",
                operation,
                attempt + 1,
                attempts,
                timeout,
            )
            if attempt + 1 >= attempts:
                raise
        except Exception as exc:
            logger.warning(
                "%s attempt %d/%d raised %s: %s",
                operation,
                attempt + 1,
                attempts,
                exc.__class__.__name__,
                exc,
            )
            if attempt + 1 >= attempts:
                raise
        await sleep(backoff * (2**attempt))
    raise RuntimeError("unreachable")  # pragma: no cover
