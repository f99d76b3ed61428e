"""
Middleware package for cache handling.
"""

from .cache import (
    CacheMiddleware,
    ResponseInterceptor,
    ResponseSnapshot,
    extract_user_id,
    generate_cache_key,
)
from .config import AutoCacheConfig, CacheConfig, CacheStrategy, InvalidationConfig

__all__ = [
    "CacheMiddleware",
    "ResponseInterceptor",
    "ResponseSnapshot",
    "extract_user_id",
    "generate_cache_key",
    "AutoCacheConfig",
    "CacheConfig",
    "CacheStrategy",
    "InvalidationConfig",
]
