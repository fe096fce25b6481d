"""Bounded exponential-backoff retry for webhook processing.

Runs a caller-supplied coroutine function until it succeeds or the attempt
budget is spent, and reports a uniform outcome instead of raising.

- Delay before attempt k+1 is base_delay * 2^(k-1) (first retry waits base_delay)
- Backoff uses asyncio.sleep, so other requests keep being served
- Work is at-least-once: the handler owns idempotency
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a single invocation."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError("max_attempts must be an integer")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if not math.isfinite(self.base_delay) or self.base_delay < 0:
            raise ValueError(f"base_delay must be a finite number >= 0, got {self.base_delay}")


@dataclass(frozen=True)
class Success(Generic[T]):
    result: T
    attempts_made: int = 1

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    last_error: BaseException
    attempts_made: int

    @property
    def succeeded(self) -> bool:
        return False


ProcessingOutcome = Union[Success[T], Failure]


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-indexed)."""
    return policy.base_delay * (2 ** (attempt - 1))


async def run_with_retry(
    work: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> ProcessingOutcome[T]:
    """Invoke ``work`` until it succeeds or ``policy.max_attempts`` is reached.

    Args:
        work: Zero-argument coroutine function; any Exception counts as failure.
        policy: Attempt budget and base backoff delay.

    Returns:
        Success(result, attempts_made) on the first successful attempt, or
        Failure(last_error, attempts_made=max_attempts) once the budget is spent.
    """
    attempt = 1
    while True:
        try:
            result = await work()
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    "Webhook processing failed after %d attempt(s): %s: %s",
                    attempt,
                    type(e).__name__,
                    str(e)[:200],
                )
                return Failure(last_error=e, attempts_made=attempt)

            delay = backoff_delay(policy, attempt)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt,
                policy.max_attempts,
                type(e).__name__,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("Webhook processing succeeded on attempt %d", attempt)
        return Success(result=result, attempts_made=attempt)
