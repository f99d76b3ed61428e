"""
Cache Middleware Configuration

Strategy, auto-cache and invalidation options for CacheMiddleware.
Tag, pattern and key options take a static list or a callable; callables
may be plain functions or coroutine functions.
"""

from enum import Enum
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel, Field

from ..constants import (
    COMPRESSION_THRESHOLD_BYTES,
    DEFAULT_EXCLUDED_PATHS,
    DEFAULT_NAMESPACE,
    DEFAULT_TTL_SECONDS,
)
from ..core.config import Settings, get_settings

# (request) -> list of tags
RequestResolver = Callable[..., Any]
# (request, response, data) -> list of tags / patterns / keys
MutationResolver = Callable[..., Any]


class CacheStrategy(str, Enum):
    """
    Cache strategy options.

    - auto: Automatic caching for GET requests and invalidation for mutations
    - manual: Handlers use request.state.cache themselves
    - none: Caching disabled, only attaches the cache service to the request
    """

    AUTO = "auto"
    MANUAL = "manual"
    NONE = "none"


class AutoCacheConfig(BaseModel):
    """Auto-cache configuration for GET requests."""

    enabled: bool = Field(default=True, description="Enable auto-caching")
    key_generator: Optional[Callable[..., str]] = Field(
        default=None, description="Custom cache key generator: (request) -> str"
    )
    tags: Union[List[str], RequestResolver] = Field(
        default_factory=list,
        description="Tags for cached entries, static or (request) -> list",
    )
    include_auth: bool = Field(
        default=False, description="Include the authenticated user id in the key"
    )
    condition: Optional[Callable[..., bool]] = Field(
        default=None, description="(request) -> bool, False skips caching"
    )
    user_id_extractor: Optional[Callable[..., Optional[str]]] = Field(
        default=None,
        description="(request) -> user id, overrides request.state.user lookup",
    )


class InvalidationConfig(BaseModel):
    """Cache invalidation configuration for POST/PUT/PATCH/DELETE requests."""

    enabled: bool = Field(default=True, description="Enable cache invalidation")
    tags: Optional[Union[List[str], MutationResolver]] = Field(
        default=None, description="Tags to invalidate"
    )
    patterns: Optional[Union[List[str], MutationResolver]] = Field(
        default=None, description="Key patterns to delete, e.g. ['list:*']"
    )
    keys: Optional[Union[List[str], MutationResolver]] = Field(
        default=None, description="Specific cache keys to delete"
    )
    after_response: bool = Field(
        default=False,
        description="Run invalidation in the background once the body is sent",
    )


class CacheConfig(BaseModel):
    """Main cache middleware configuration."""

    strategy: CacheStrategy = CacheStrategy.AUTO
    ttl: int = Field(default=DEFAULT_TTL_SECONDS, ge=1, description="TTL in seconds")
    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)
    compression_threshold: int = Field(default=COMPRESSION_THRESHOLD_BYTES, ge=0)
    auto_cache: AutoCacheConfig = Field(default_factory=AutoCacheConfig)
    invalidate: InvalidationConfig = Field(default_factory=InvalidationConfig)
    exclude_paths: List[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_PATHS),
        description="Paths passed through without attaching the cache",
    )

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, **overrides: Any
    ) -> "CacheConfig":
        """Build a config using namespace/TTL/threshold from the environment."""
        settings = settings or get_settings()
        values = {
            "namespace": settings.CACHE_NAMESPACE,
            "ttl": settings.CACHE_DEFAULT_TTL,
            "compression_threshold": settings.CACHE_COMPRESSION_THRESHOLD,
        }
        values.update(overrides)
        return cls(**values)
