"""
Process-wide caches.

Struct mappings are computed once per record type and field mapper and
never evicted. Composed record queries live in a bounded LRU cache.
"""
import logging
import threading

import cachetools

logger = logging.getLogger(__name__)


class Cache:
    """Cache manager for the sqlrecord package.

    Thread-safe singleton that owns the named caches and the locks that
    guard them.
    """

    _instance = None
    _caches: dict[str, cachetools.Cache] = {}
    _locks: dict[str, threading.RLock] = {}
    _lock = threading.RLock()

    @classmethod
    def get_instance(cls) -> 'Cache':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get_cache(self, name: str, maxsize: int | None = 256) -> cachetools.Cache:
        """Get or create a cache with the given name.

        Args:
            name: Name of the cache
            maxsize: Maximum LRU size, None for a cache that never evicts

        Returns
            Cache instance
        """
        if name not in self._caches:
            with self._lock:
                if name not in self._caches:
                    if maxsize is None:
                        self._caches[name] = cachetools.Cache(maxsize=float('inf'))
                    else:
                        self._caches[name] = cachetools.LRUCache(maxsize=maxsize)
                    self._locks[name] = threading.RLock()
        return self._caches[name]

    def get_lock(self, name: str) -> threading.RLock:
        """Lock guarding the cache called `name`."""
        self.get_cache(name)
        return self._locks[name]

    def clear_all(self) -> None:
        """Clear all managed caches."""
        with self._lock:
            for name, cache in self._caches.items():
                with self._locks[name]:
                    cache.clear()

    def clear_cache(self, name: str) -> None:
        """Clear a specific cache by name."""
        with self._lock:
            if name in self._caches:
                with self._locks[name]:
                    self._caches[name].clear()
                logger.debug(f'Cleared cache {name}')


def cached(name: str, key, maxsize: int | None = 256):
    """Decorator memoizing a function in the named cache.

    Args:
        name: Name of the cache
        key: Function building the cache key from the call arguments
        maxsize: Maximum LRU size, None for a cache that never evicts
    """
    manager = Cache.get_instance()
    return cachetools.cached(cache=manager.get_cache(name, maxsize),
                             key=key, lock=manager.get_lock(name))
