"""
Retry Policy: Exponential Backoff with Jitter

Implements the retry strategy used by schema writes:
- Exponential backoff: base × 2^n, capped
- Full jitter: random(0, backoff) to prevent thundering herd
- retry_result re-runs callables returning Result and hands back
  the last typed Err
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tagmesh.core import constants as C
from tagmesh.core.types import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


@dataclass
class RetryPolicy:
    """Retry configuration."""

    max_retries: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter

    # Err values are retried only when this returns True (None: always)
    retry_on: Optional[Callable[[Any], bool]] = None

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """No retries (for non-idempotent operations)."""
        return cls(max_retries=0)

    @classmethod
    def on_conflict(cls, max_retries: int, base_delay_ms: int) -> RetryPolicy:
        """Retry only revision conflicts, for read-check-write cycles."""
        return cls(
            max_retries=max_retries,
            base_delay_ms=base_delay_ms,
            retry_on=lambda error: getattr(error, "is_conflict", False),
        )

    def backoff(self, attempt: int) -> float:
        return calculate_backoff(
            attempt=attempt,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


async def retry_result(
    func: Callable[[], Awaitable[Result[T, E]]],
    policy: Optional[RetryPolicy] = None,
) -> Result[T, E]:
    """
    Re-run a Result-returning coroutine while it fails retryably.

    An Err is retried when policy.retry_on accepts it, up to
    policy.max_retries extra attempts. The last Err is returned
    unchanged when attempts run out, so callers keep the typed error.
    """
    if policy is None:
        policy = RetryPolicy.default()

    result = await func()
    for attempt in range(policy.max_retries):
        if result.is_ok():
            return result
        if policy.retry_on is not None and not policy.retry_on(result.error):
            return result
        delay = policy.backoff(attempt)
        logger.debug("Retrying after %s in %.0fms (attempt %d)", result.error, delay, attempt + 2)
        await asyncio.sleep(delay / 1000)
        result = await func()
    return result


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Calculate backoff delay with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay
