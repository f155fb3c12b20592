from .capture import ResponseCapture
from .errors import (
    CacheConfigurationError,
    CacheError,
    CacheUnavailableError,
    CacheWriteError,
    InvalidCacheKeyError,
    OutsideCacheRootError,
)
from .middleware import CacheMiddleware, escaped_path
from .storage import CacheBackend, LocalCacheBackend, S3CacheBackend, build_backend

__all__ = [
    "CacheBackend",
    "CacheConfigurationError",
    "CacheError",
    "CacheMiddleware",
    "CacheUnavailableError",
    "CacheWriteError",
    "InvalidCacheKeyError",
    "LocalCacheBackend",
    "OutsideCacheRootError",
    "ResponseCapture",
    "S3CacheBackend",
    "build_backend",
    "escaped_path",
]
