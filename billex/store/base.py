from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class KeyValueStore(ABC):
    """
    Abstract base class for the shared key-value store

    Holds lock entries and batch state. Implementations must make
    set_if_absent and compare_and_delete atomic; every mutation the engine
    makes goes through one of those two or through set/delete of a batch key.
    TTLs are in seconds.
    """

    @property
    @abstractmethod
    def cluster_safe(self) -> bool:
        """
        Whether state is visible to every process in the deployment

        False for in-process backends, which are only suitable for a single
        process.
        """
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """
        Store value under key only if the key does not exist

        Args:
            key: Key to set
            value: Value to store
            ttl: Seconds until the key expires

        Returns:
            True if the value was stored, False if the key was already present
        """
        pass

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """
        Delete key only if its current value equals expected

        Returns:
            True if the key was deleted
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get the value stored under key, or None"""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        """Store value under key, replacing any existing value"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete key

        Returns:
            True if the key existed, False otherwise (never an error)
        """
        pass

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until key expires; None when the key is missing or has no expiry"""
        pass

    async def ping(self) -> bool:
        """Check the store is reachable"""
        return True

    async def close(self) -> None:
        """Release connections and background resources"""
        pass

    def stats(self) -> Dict[str, Any]:
        return {
            'backend': type(self).__name__,
            'cluster_safe': self.cluster_safe
        }
