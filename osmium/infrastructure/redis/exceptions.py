"""
Redis Infrastructure Exceptions

Domain-specific exceptions for Redis and cache operations.
The cache service converts these into safe defaults at its public surface;
the strict helpers raise them so callers can tell an outage from a miss.
"""

from typing import Optional, Any, Dict


class RedisException(Exception):
    """Base exception for Redis-related errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class RedisConnectionException(RedisException):
    """Raised when Redis connection fails or is lost."""

    def __init__(
        self,
        message: str = "Redis connection failed",
        host: Optional[str] = None,
        port: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if host:
            details["host"] = host
        if port:
            details["port"] = port
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="REDIS_CONNECTION_ERROR", details=details
        )
        if original_error:
            self.__cause__ = original_error


class RedisConfigurationException(RedisException):
    """Raised when Redis client configuration is invalid."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key
        if config_value is not None:
            details["config_value"] = str(config_value)
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="REDIS_CONFIGURATION_ERROR", details=details
        )
        if original_error:
            self.__cause__ = original_error


class CacheOperationException(RedisException):
    """Raised by strict cache lookups when the store or the payload fails."""

    def __init__(
        self,
        operation: str,
        key: str,
        original_error: Optional[Exception] = None,
    ):
        details = {"operation": operation, "key": key}
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=f"Cache operation '{operation}' failed for key {key}",
            error_code="CACHE_OPERATION_ERROR",
            details=details,
        )
        if original_error:
            self.__cause__ = original_error
