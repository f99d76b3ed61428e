from .health import create_cache_health_router

__all__ = ["create_cache_health_router"]
