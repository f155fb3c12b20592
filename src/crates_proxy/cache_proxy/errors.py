"""Exceptions raised by the cache layer."""

from __future__ import annotations

from pathlib import Path


class CacheError(Exception):
    """A per-request cache failure. Callers degrade to a miss or skip the write."""


class InvalidCacheKeyError(CacheError):
    def __init__(self, cache_key: str, reason: str) -> None:
        super().__init__(f"invalid cache key {cache_key!r}: {reason}")
        self.cache_key = cache_key
        self.reason = reason


class OutsideCacheRootError(InvalidCacheKeyError):
    """The key resolves to a path that is not below the cache's base directory."""

    def __init__(self, cache_key: str, base_dir: Path) -> None:
        super().__init__(cache_key, f"the resulting path is outside the cache base directory {base_dir}")
        self.base_dir = base_dir


class CacheWriteError(CacheError):
    pass


class CacheUnavailableError(CacheError):
    """The backing store is failing or its circuit breaker is open."""


class CacheConfigurationError(Exception):
    """A backend could not be constructed. Fatal at startup."""
