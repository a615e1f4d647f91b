import logging
from typing import Optional

from redis.exceptions import RedisError

from billex.config.billex_config import BillexConfig
from billex.exceptions import StoreError, StoreUnavailable

from .base import KeyValueStore
from .memory import InMemoryKeyValueStore
from .redis_store import RedisKeyValueStore

logger = logging.getLogger(__name__)

UNSAFE_FALLBACK_WARNING = (
    "Shared store unavailable; using the in-process store. Locks and batch "
    "state are NOT safe for multi-process deployments in this mode."
)


async def create_store(config: Optional[BillexConfig] = None) -> KeyValueStore:
    """
    Create the shared key-value store from the store section

    Connects to store.redis_url when set and verifies it with a ping. When
    no URL is configured or Redis cannot be reached, falls back to an
    InMemoryKeyValueStore (cluster_safe = False) with its sweeper running,
    unless store.require_cluster_safe is set.

    Raises:
        StoreUnavailable: Redis unreachable and store.require_cluster_safe is true
    """
    config = config or BillexConfig()
    url = config.get('store.redis_url')
    require_cluster_safe = bool(config.get('store.require_cluster_safe', False))

    if url:
        store = RedisKeyValueStore.from_url(
            url,
            key_prefix=config.get('store.key_prefix', ''),
            connect_timeout=float(config.get('store.connect_timeout_seconds', 5))
        )
        try:
            await store.ping()
            logger.info("Connected to shared Redis store")
            return store
        except (StoreError, RedisError, OSError) as e:
            await store.close()
            if require_cluster_safe:
                raise StoreUnavailable(f"Shared store unreachable at startup: {e}") from e
            logger.error(f"Redis store unreachable: {e}")
    elif require_cluster_safe:
        raise StoreUnavailable("store.require_cluster_safe is set but no store.redis_url is configured")

    store = InMemoryKeyValueStore()
    store.start_sweeper(float(config.get('store.sweep_interval_seconds', 30)))
    logger.warning(UNSAFE_FALLBACK_WARNING)
    return store
