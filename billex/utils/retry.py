"""
Retry with capped exponential backoff

Shared by the lock service (acquisition) and the provider client (HTTP
calls). Delay before retry n is min(base_delay * 2**(n-1), max_delay) and
the number of attempts is always bounded.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Bounded attempts with capped exponential backoff"""
    max_attempts: int = 3
    base_delay: float = 0.1  # seconds
    max_delay: float = 1.0  # seconds

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def total_backoff(self) -> float:
        """Sum of all delays when every attempt fails"""
        return sum(self.delay_for(n) for n in range(1, self.max_attempts))

    @classmethod
    def from_config(cls, section: dict, prefix: str = '') -> 'RetryPolicy':
        """Build from a config mapping such as provider.retry"""
        return cls(
            max_attempts=int(section.get(f'{prefix}max_attempts', 3)),
            base_delay=float(section.get(f'{prefix}base_delay_seconds', 0.1)),
            max_delay=float(section.get(f'{prefix}max_delay_seconds', 1.0))
        )


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    description: str = 'operation',
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Call fn until it succeeds or the policy's attempts run out.

    Args:
        fn: Zero-argument coroutine function
        policy: Attempts and backoff
        retry_on: Exception types that trigger a retry
        should_retry: Optional predicate to veto a retry for a given error
        description: Used in log messages
        sleep: Injected for tests

    Returns:
        fn's result

    Raises:
        The last exception once attempts are exhausted, or immediately for
        errors not covered by retry_on / vetoed by should_retry.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= policy.max_attempts:
                logger.debug(f"{description} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                f"{description} attempt {attempt}/{policy.max_attempts} failed ({e}); "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
