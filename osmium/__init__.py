"""
Osmium: Redis-backed response caching for ASGI applications.

Namespaced cache service with tag and pattern invalidation, a client
factory with lifecycle observers and graceful shutdown, and a middleware
that auto-caches GET responses and invalidates entries after mutations.
"""

from .constants import APP_VERSION
from .infrastructure.redis import (
    ConnectionStatus,
    RedisClientConfig,
    RedisLifecycleEvents,
    create_redis_client,
    open_redis_client,
    shutdown_redis_client,
)
from .middleware import (
    AutoCacheConfig,
    CacheConfig,
    CacheMiddleware,
    CacheStrategy,
    InvalidationConfig,
)
from .services.cache import MISSING, CacheService

__version__ = APP_VERSION

__all__ = [
    "CacheService",
    "MISSING",
    "CacheMiddleware",
    "CacheConfig",
    "CacheStrategy",
    "AutoCacheConfig",
    "InvalidationConfig",
    "ConnectionStatus",
    "RedisClientConfig",
    "RedisLifecycleEvents",
    "create_redis_client",
    "open_redis_client",
    "shutdown_redis_client",
]
