from typing import Optional

from fastapi import HTTPException, Request, status

from ..services.cache.cache_service import CacheService


def get_cache(request: Request) -> CacheService:
    """Provide the CacheService attached by CacheMiddleware.

    Raises:
        HTTPException: 500 when the route is not covered by CacheMiddleware
            (middleware missing or path excluded).
    """
    cache = getattr(request.state, "cache", None)
    if cache is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cache is not available for this route",
        )
    return cache


def get_cache_key(request: Request) -> Optional[str]:
    return getattr(request.state, "cache_key", None)
