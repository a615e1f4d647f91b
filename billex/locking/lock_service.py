"""
Distributed Lock Service

Mutual exclusion keyed by an arbitrary string, stored in the shared
key-value store:

- acquire: one atomic set-if-absent with a TTL, holding a random token
- release: one atomic compare-and-delete on that token, so a holder whose
  lock already expired (and was taken by someone else) cannot release it
- with_lock / hold: bounded retries with capped exponential backoff, then
  LockTimeoutError; the lock is released however the guarded call exits

Per key the only states are Unheld and Held(token, expires_at).
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from billex.config.billex_config import BillexConfig
from billex.exceptions import LockTimeoutError, LockUnavailable
from billex.store.base import KeyValueStore
from billex.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

T = TypeVar('T')

FOLIO_LOCK_PREFIX = 'folio:'


def folio_lock_key(tenant_id: str) -> str:
    """Lock key serializing a tenant's folio-consuming provider calls"""
    return f"{FOLIO_LOCK_PREFIX}{tenant_id}"


@dataclass(frozen=True)
class LockEntry:
    """What the store holds for a held key"""
    key: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class LockHandle(LockEntry):
    """Proof of ownership returned by acquire; the token is the fencing token"""
    acquired_at: Optional[datetime] = None
    backend: str = ''


class LockService:
    """
    Lock primitive over an injected KeyValueStore

    Usage:
        locks = LockService(store)

        result = await locks.with_lock(folio_lock_key(tenant_id), create_invoice, ttl=60)

        async with locks.hold('report:42', ttl=30):
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_ttl: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, base_delay=0.1, max_delay=1.0)
        self._sleep = sleep

        self._acquired_count = 0
        self._contended_count = 0
        self._timeout_count = 0
        self._stale_release_count = 0

        if not store.cluster_safe:
            logger.warning(
                "Lock service running on an in-process store; locks are NOT safe "
                "for multi-process deployments"
            )

    @classmethod
    def from_config(cls, store: KeyValueStore, config: Optional[BillexConfig] = None) -> 'LockService':
        config = config or BillexConfig()
        return cls(
            store,
            default_ttl=float(config.get('locks.folio_ttl_seconds', 60)),
            retry_policy=RetryPolicy(
                max_attempts=int(config.get('locks.max_retries', 5)),
                base_delay=float(config.get('locks.retry_base_delay_seconds', 0.1)),
                max_delay=float(config.get('locks.retry_max_delay_seconds', 1.0))
            )
        )

    @property
    def is_cluster_safe(self) -> bool:
        return self.store.cluster_safe

    async def acquire(
        self,
        key: str,
        ttl: Optional[float] = None,
        retry_delay: Optional[float] = None
    ) -> LockHandle:
        """
        Try to take the lock once (twice if retry_delay is given)

        Args:
            key: Resource name
            ttl: Seconds until the lock expires on its own
            retry_delay: If set, wait this long and try one more time

        Returns:
            LockHandle carrying the fencing token

        Raises:
            LockUnavailable: The key is held by someone else
        """
        ttl = self.default_ttl if ttl is None else ttl
        token = secrets.token_hex(16)

        acquired = await self.store.set_if_absent(key, token, ttl)
        if not acquired and retry_delay is not None:
            await self._sleep(retry_delay)
            acquired = await self.store.set_if_absent(key, token, ttl)

        if not acquired:
            self._contended_count += 1
            raise LockUnavailable(key)

        self._acquired_count += 1
        now = datetime.now(timezone.utc)
        logger.debug(f"Acquired lock {key} (ttl={ttl}s)")
        return LockHandle(
            key=key,
            token=token,
            expires_at=now + timedelta(seconds=ttl),
            acquired_at=now,
            backend=type(self.store).__name__
        )

    async def release(self, handle: LockHandle) -> bool:
        """
        Release a lock if the handle's token still owns it

        Returns:
            True if the lock was released; False if it had already expired,
            been released, or been re-acquired by another holder
        """
        released = await self.store.compare_and_delete(handle.key, handle.token)
        if released:
            logger.debug(f"Released lock {handle.key}")
        else:
            self._stale_release_count += 1
            logger.debug(f"Lock {handle.key} no longer held by this token; release skipped")
        return released

    async def _acquire_with_retries(
        self,
        key: str,
        ttl: Optional[float],
        max_retries: Optional[int],
        retry_delay: Optional[float]
    ) -> LockHandle:
        policy = RetryPolicy(
            max_attempts=max_retries if max_retries is not None else self.retry_policy.max_attempts,
            base_delay=retry_delay if retry_delay is not None else self.retry_policy.base_delay,
            max_delay=max(self.retry_policy.max_delay, retry_delay or 0)
        )
        try:
            return await retry_async(
                lambda: self.acquire(key, ttl),
                policy,
                retry_on=(LockUnavailable,),
                description=f"lock {key}",
                sleep=self._sleep
            )
        except LockUnavailable:
            self._timeout_count += 1
            logger.warning(f"Gave up on lock {key} after {policy.max_attempts} attempts")
            raise LockTimeoutError(key, policy.max_attempts)

    async def with_lock(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ) -> T:
        """
        Run fn while holding the lock

        Args:
            key: Resource name
            fn: Zero-argument coroutine function
            ttl: Lock TTL in seconds
            max_retries: Total acquisition attempts
            retry_delay: Base backoff delay in seconds (doubles, capped)

        Raises:
            LockTimeoutError: Acquisition attempts exhausted
        """
        async with self.hold(key, ttl=ttl, max_retries=max_retries, retry_delay=retry_delay):
            return await fn()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ) -> AsyncIterator[LockHandle]:
        """Context manager form of with_lock"""
        handle = await self._acquire_with_retries(key, ttl, max_retries, retry_delay)
        try:
            yield handle
        finally:
            if not await self.release(handle):
                logger.warning(f"Lock {key} expired while held; its TTL is shorter than the guarded work")

    def stats(self) -> Dict[str, Any]:
        """Counters plus the store's cluster-safety flag for operators"""
        return {
            'cluster_safe': self.is_cluster_safe,
            'store': self.store.stats(),
            'acquired': self._acquired_count,
            'contended': self._contended_count,
            'timeouts': self._timeout_count,
            'stale_releases': self._stale_release_count
        }
