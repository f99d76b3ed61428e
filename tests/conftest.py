"""
Main pytest configuration for osmium tests.

Redis is replaced by fakeredis; every test gets its own FakeServer so
keyspaces never leak between tests.
"""

import os

# Set test environment variables before importing osmium modules
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_HANDLE_SIGNALS"] = "false"
os.environ["REDIS_OTEL_INSTRUMENTATION"] = "false"
os.environ["LOG_LEVEL"] = "DEBUG"

import fakeredis
import pytest
import pytest_asyncio

from osmium.core import tasks
from osmium.core.config import get_settings
from osmium.services.cache import CacheService


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(fake_server):
    """Async fake Redis client with decoded responses."""
    client = fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)
    yield client
    await tasks.drain(timeout=1.0)
    await client.aclose()


@pytest_asyncio.fixture
async def cache(redis_client):
    return CacheService(redis_client, namespace="test", default_ttl=60)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# Test markers and configuration
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "redis: marks tests as Redis-related")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file location."""
    for item in items:
        if "redis" in item.nodeid or "cache" in item.nodeid:
            item.add_marker(pytest.mark.redis)
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
