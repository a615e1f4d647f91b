"""
In-process key-value store

Fallback used when Redis cannot be reached. State lives in a dict guarded by
a mutex and is invisible to other processes, so the store reports
cluster_safe = False. Expired entries are dropped on access and by an
optional background sweeper thread.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class InMemoryKeyValueStore(KeyValueStore):
    """
    Dict-backed store with per-key expiry

    Args:
        clock: Monotonic time source in seconds; tests inject a fake one
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or time.monotonic
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()
        self._swept_count = 0

    @property
    def cluster_safe(self) -> bool:
        return False

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        """Return the entry for key, dropping it if expired. Caller holds the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expires_at(ttl))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._data[key]
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expires_at(ttl))

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed"""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, (_, expires_at) in self._data.items()
                if expires_at is not None and now >= expires_at
            ]
            for key in expired:
                del self._data[key]
        if expired:
            self._swept_count += len(expired)
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def start_sweeper(self, interval: float = 30.0) -> None:
        """Start the periodic sweep thread"""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()

        def run():
            while not self._stop_sweeper.wait(interval):
                self.sweep()

        self._sweeper = threading.Thread(target=run, name='billex-store-sweeper', daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    async def close(self) -> None:
        self.stop_sweeper()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats.update({
            'entries': len(self),
            'swept': self._swept_count,
            'sweeper_running': self._sweeper is not None and self._sweeper.is_alive()
        })
        return stats
