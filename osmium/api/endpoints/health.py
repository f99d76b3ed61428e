"""
Cache health check endpoint.

Mount next to the application's own health routes; /health paths are
excluded from caching by default.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from ...constants import APP_NAME, DEFAULT_NAMESPACE
from ...infrastructure.redis.connection_factory import RedisClient
from ...services.cache.cache_service import CacheService

logger = logging.getLogger(__name__)


def create_cache_health_router(
    redis_client: RedisClient, namespace: str = DEFAULT_NAMESPACE
) -> APIRouter:
    """Build a router exposing GET /health/cache for the given client."""
    router = APIRouter(prefix="/health", tags=["health"])

    @router.get("/cache")
    async def cache_health_check() -> JSONResponse:
        """
        Redis cache health check.

        Returns 200 when Redis answers PING, 503 otherwise.
        """
        cache = CacheService(redis_client, namespace=namespace)
        healthy = await cache.health_check()

        body: Dict[str, Any] = {
            "status": "healthy" if healthy else "unhealthy",
            "service": APP_NAME,
            "component": "redis",
            "namespace": namespace,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if not healthy:
            logger.warning("Cache health check reported unhealthy")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body
            )

        return JSONResponse(status_code=status.HTTP_200_OK, content=body)

    return router
