"""Bounded retry combinator shared by every scraper operation."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and delay schedule.

    delay for attempt n (0-based) = delay_seconds * backoff ** n + U(0, jitter_seconds)
    """

    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff: float = 1.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        delay = self.delay_seconds * (self.backoff ** attempt)
        if self.jitter_seconds > 0:
            delay += random.uniform(0, self.jitter_seconds)
        return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_failure: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to `policy.max_attempts` times.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt budget and delays.
        name: Label used in log lines.
        retry_on: Exception types that consume an attempt; anything else propagates at once.
        on_failure: Awaited after every failed attempt (e.g. to tear a session down).
        sleep: Injected for tests.

    Returns:
        The first successful result.

    Raises:
        The last error once the budget is exhausted.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if on_failure is not None:
                await on_failure(attempt, e)

            if attempt + 1 >= attempts:
                break

            delay = policy.delay_for(attempt)
            logger.warning(
                f"[RETRY] {name} failed (attempt {attempt + 1}/{attempts}): {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    logger.error(f"[RETRY] {name} failed after {attempts} attempts: {last_error}")
    raise last_error
