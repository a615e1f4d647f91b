"""
Redis-backed key-value store

Atomic set-if-absent is a single SET NX PX; compare-and-delete runs as a Lua
script so the read and the delete cannot be separated by another client.
"""

import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from billex.exceptions import StoreError, StoreUnavailable

from .base import KeyValueStore

logger = logging.getLogger(__name__)

COMPARE_AND_DELETE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _ms(ttl: float) -> int:
    return max(1, int(round(ttl * 1000)))


class RedisKeyValueStore(KeyValueStore):
    """
    Store shared by every process connected to the same Redis

    Args:
        client: redis.asyncio client created with decode_responses=True
        key_prefix: Namespace prepended to every key
    """

    def __init__(self, client: 'redis.Redis', key_prefix: str = ''):
        self.client = client
        self.key_prefix = key_prefix
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = '', connect_timeout: float = 5.0) -> 'RedisKeyValueStore':
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout
        )
        return cls(client, key_prefix=key_prefix)

    @property
    def cluster_safe(self) -> bool:
        return True

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _wrap(self, operation: str, error: RedisError) -> StoreError:
        if isinstance(error, (RedisConnectionError, RedisTimeoutError)):
            return StoreUnavailable(f"Redis unreachable during {operation}: {error}")
        return StoreError(f"Redis {operation} failed: {error}")

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        try:
            result = await self.client.set(self._key(key), value, nx=True, px=_ms(ttl))
        except RedisError as e:
            raise self._wrap('set_if_absent', e) from e
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            deleted = await self._compare_and_delete(keys=[self._key(key)], args=[expected])
        except RedisError as e:
            raise self._wrap('compare_and_delete', e) from e
        return int(deleted or 0) == 1

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as e:
            raise self._wrap('get', e) from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            if ttl is None:
                await self.client.set(self._key(key), value)
            else:
                await self.client.set(self._key(key), value, px=_ms(ttl))
        except RedisError as e:
            raise self._wrap('set', e) from e

    async def delete(self, key: str) -> bool:
        try:
            return int(await self.client.delete(self._key(key))) > 0
        except RedisError as e:
            raise self._wrap('delete', e) from e

    async def ttl(self, key: str) -> Optional[float]:
        try:
            remaining = await self.client.pttl(self._key(key))
        except RedisError as e:
            raise self._wrap('ttl', e) from e
        # -2: no such key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise self._wrap('ping', e) from e

    async def close(self) -> None:
        await self.client.aclose()

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats['key_prefix'] = self.key_prefix
        return stats
