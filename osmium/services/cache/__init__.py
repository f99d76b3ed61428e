"""Namespaced Redis cache with tag and pattern invalidation."""

from .cache_service import MISSING, CacheService

__all__ = ["CacheService", "MISSING"]
