"""
Rate Limiter

Token bucket per tenant for calls to the invoicing provider, so a large
batch from one tenant cannot exhaust the provider's request quota for
everyone else.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration"""
    requests_per_minute: int = 120

    # Burst handling
    burst_size: int = 10

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateLimitConfig':
        return cls(
            requests_per_minute=int(data.get('requests_per_minute', cls.requests_per_minute)),
            burst_size=int(data.get('burst_size', cls.burst_size))
        )


@dataclass
class TokenBucket:
    tokens: float
    last_update: float


class RateLimiter:
    """
    Token bucket rate limiter, one bucket per tenant

    Usage:
        limiter = RateLimiter(RateLimitConfig(requests_per_minute=120))

        await limiter.acquire(tenant_id)
        response = await client.post(...)
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = asyncio.Lock()
        self._waited_count = 0

    @property
    def refill_rate(self) -> float:
        """Tokens per second"""
        return self.config.requests_per_minute / 60.0

    def _refill(self, bucket: TokenBucket) -> None:
        now = self._clock()
        elapsed = max(0.0, now - bucket.last_update)
        bucket.tokens = min(float(self.config.burst_size), bucket.tokens + elapsed * self.refill_rate)
        bucket.last_update = now

    async def acquire(self, tenant_id: str = 'default') -> None:
        """
        Acquire permission to make a request

        Blocks until the tenant's bucket has a token.
        """
        while True:
            async with self._lock:
                bucket = self._buckets.get(tenant_id)
                if bucket is None:
                    bucket = TokenBucket(tokens=float(self.config.burst_size), last_update=self._clock())
                    self._buckets[tenant_id] = bucket
                self._refill(bucket)

                if bucket.tokens >= 1:
                    bucket.tokens -= 1
                    return

                wait_time = (1 - bucket.tokens) / self.refill_rate

            self._waited_count += 1
            logger.debug(f"Rate limited for tenant {tenant_id}, waiting {wait_time:.2f}s")
            await self._sleep(wait_time)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'requests_per_minute': self.config.requests_per_minute,
            'burst_size': self.config.burst_size,
            'tenants': len(self._buckets),
            'waits': self._waited_count
        }
