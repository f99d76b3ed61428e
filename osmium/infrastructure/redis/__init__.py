"""
Redis Infrastructure Module

Client construction, lifecycle observation and graceful shutdown for the
Redis store backing the cache.

This module provides:
- create_redis_client / open_redis_client: single node or cluster clients
- RedisLifecycleEvents: connect/ready/error/close/reconnecting observers
- GracefulShutdown: one-shot close on SIGTERM/SIGINT
- Exception hierarchy for Redis and cache failures
"""

from .connection_factory import (
    RedisClient,
    RedisClientConfig,
    check_redis_health,
    create_redis_client,
    get_shutdown_hook,
    open_redis_client,
    parse_cluster_nodes,
    shutdown_redis_client,
)
from .lifecycle import (
    ConnectionStatus,
    GracefulShutdown,
    ReconnectBackoff,
    RedisLifecycleEvents,
)
from .exceptions import (
    RedisException,
    RedisConnectionException,
    RedisConfigurationException,
    CacheOperationException,
)

__all__ = [
    # Client construction
    "RedisClient",
    "RedisClientConfig",
    "create_redis_client",
    "open_redis_client",
    "check_redis_health",
    "get_shutdown_hook",
    "shutdown_redis_client",
    "parse_cluster_nodes",
    # Lifecycle
    "ConnectionStatus",
    "GracefulShutdown",
    "ReconnectBackoff",
    "RedisLifecycleEvents",
    # Exceptions
    "RedisException",
    "RedisConnectionException",
    "RedisConfigurationException",
    "CacheOperationException",
]
