from .base import KeyValueStore
from .memory import InMemoryKeyValueStore
from .redis_store import RedisKeyValueStore
from .factory import create_store

__all__ = ['KeyValueStore', 'InMemoryKeyValueStore', 'RedisKeyValueStore', 'create_store']
