"""Capped exponential backoff shared by the generation retries and the client pollers."""
import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

T = TypeVar("T")
logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """
    delay(n) = min(initial_delay * multiplier ** n, max_delay) + uniform(0, jitter)

    n is the zero-based index of the wait, so the first wait uses
    initial_delay. A multiplier of 1 gives a fixed delay.
    """

    initial_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 15.0
    max_attempts: int = 20
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.initial_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("Backoff delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("Backoff needs at least one attempt")

    def delay(self, n: int, rng: Optional[random.Random] = None) -> float:
        base = min(self.initial_delay * self.multiplier**n, self.max_delay)
        if self.jitter:
            base += (rng or random).uniform(0, self.jitter)
        return base

    def delays(self, rng: Optional[random.Random] = None) -> list[float]:
        """Waits between consecutive attempts (one fewer than max_attempts)."""
        return [self.delay(n, rng) for n in range(self.max_attempts - 1)]


async def retry_with_backoff(
    func: Callable[[int], Awaitable[T]],
    policy: BackoffPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Call func until it succeeds, retrying only the exception types in retry_on.

    Args:
        func: Coroutine function receiving the 1-based attempt number
        policy: Schedule and attempt budget
        retry_on: Exception types worth another attempt; anything else propagates at once
        sleep: Awaitable sleep, injectable for tests

    Returns:
        func's result

    Raises:
        The last retryable exception once the budget is spent
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(attempt)
        except retry_on as e:
            if attempt == policy.max_attempts:
                raise
            delay = policy.delay(attempt - 1)
            logger.warning(
                "retry_scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)

    raise AssertionError("unreachable")
