"""
Unit tests for CacheService.

Runs against fakeredis; failure paths use mocked clients.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from osmium.constants import COMPRESSION_PREFIX
from osmium.infrastructure.redis.exceptions import CacheOperationException
from osmium.services.cache import MISSING, CacheService


@pytest.fixture
def broken_redis():
    """Redis client whose every command fails."""
    error = RedisConnectionError("connection refused")
    client = MagicMock()
    client.get = AsyncMock(side_effect=error)
    client.delete = AsyncMock(side_effect=error)
    client.smembers = AsyncMock(side_effect=error)
    client.exists = AsyncMock(side_effect=error)
    client.ttl = AsyncMock(side_effect=error)
    client.incr = AsyncMock(side_effect=error)
    client.ping = AsyncMock(side_effect=error)
    client.pipeline = MagicMock(side_effect=error)
    client.scan_iter = MagicMock(side_effect=error)
    return client


class TestKeys:
    """Test key namespacing."""

    def test_make_key_uses_namespace(self):
        cache = CacheService(MagicMock(), namespace="users")
        assert cache.make_key("1") == "users:1"
        assert cache.make_key("1", namespace="posts") == "posts:1"

    def test_defaults(self):
        cache = CacheService(MagicMock())
        assert cache.namespace == "app"
        assert cache.default_ttl == 3600


class TestGetSet:
    """Test value round trips and expiry."""

    @pytest.mark.asyncio
    async def test_round_trip(self, cache):
        value = {"id": 1, "name": "Ada", "tags": ["a", "b"], "active": True}
        assert await cache.set("user:1", value) is True
        assert await cache.get("user:1") == value

    @pytest.mark.asyncio
    async def test_round_trip_scalars(self, cache):
        await cache.set("count", 42)
        await cache.set("label", "héllo")
        await cache.set("items", [1, 2, 3])
        assert await cache.get("count") == 42
        assert await cache.get("label") == "héllo"
        assert await cache.get("items") == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_large_value_is_stored_encoded(self, cache, redis_client):
        value = {"blob": "x" * 5000}
        await cache.set("big", value)

        raw = await redis_client.get("test:big")
        assert raw.startswith(COMPRESSION_PREFIX)
        assert await cache.get("big") == value

    @pytest.mark.asyncio
    async def test_small_value_is_stored_as_json(self, cache, redis_client):
        await cache.set("small", {"a": 1})
        assert await redis_client.get("test:small") == '{"a":1}'

    @pytest.mark.asyncio
    async def test_bytes_responses_are_decoded(self, fake_server):
        client = fakeredis.FakeAsyncRedis(server=fake_server)
        cache = CacheService(client, namespace="raw", compression_threshold=10)
        try:
            await cache.set("k", {"value": "long enough to encode"})
            assert await cache.get("k") == {"value": "long enough to encode"}
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, cache):
        assert await cache.get("nope") is None
        assert await cache.get("nope", default="fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_ttl_applied(self, cache):
        await cache.set("k", "v", ttl=30)
        ttl = await cache.ttl("k")
        assert 0 < ttl <= 30

    @pytest.mark.asyncio
    async def test_default_ttl_applied(self, cache):
        await cache.set("k", "v")
        ttl = await cache.ttl("k")
        assert 30 < ttl <= 60

    @pytest.mark.asyncio
    async def test_value_expires(self, cache):
        await cache.set("short", "v", ttl=1)
        assert await cache.get("short") == "v"

        await asyncio.sleep(1.1)

        assert await cache.get("short") is None
        assert await cache.exists("short") is False

    @pytest.mark.asyncio
    async def test_ttl_of_missing_key(self, cache):
        assert await cache.ttl("absent") == -2

    @pytest.mark.asyncio
    async def test_corrupt_payload_reads_as_miss(self, cache, redis_client):
        await redis_client.set("test:bad", "{not json")
        assert await cache.get("bad") is None

    @pytest.mark.asyncio
    async def test_fetch_distinguishes_miss_from_error(self, cache, redis_client):
        await redis_client.set("test:bad", "{not json")

        assert await cache.fetch("absent") is MISSING
        with pytest.raises(CacheOperationException) as exc_info:
            await cache.fetch("bad")
        assert exc_info.value.error_code == "CACHE_OPERATION_ERROR"
        assert exc_info.value.details["operation"] == "decode"

    @pytest.mark.asyncio
    async def test_cached_none_is_a_hit_for_fetch(self, cache):
        await cache.set("nothing", None)
        assert await cache.fetch("nothing") is None

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("k", "v")
        assert await cache.delete("k") is True
        assert await cache.get("k") is None
        # Absent keys delete successfully
        assert await cache.delete("k") is True


class TestNamespaces:
    """Test namespace isolation."""

    @pytest.mark.asyncio
    async def test_same_key_different_namespaces(self, redis_client):
        users = CacheService(redis_client, namespace="users")
        posts = CacheService(redis_client, namespace="posts")

        await users.set("1", {"kind": "user"})
        await posts.set("1", {"kind": "post"})

        assert await users.get("1") == {"kind": "user"}
        assert await posts.get("1") == {"kind": "post"}
        assert await users.get("1", namespace="posts") == {"kind": "post"}

    @pytest.mark.asyncio
    async def test_pattern_deletion_stays_in_namespace(self, redis_client):
        users = CacheService(redis_client, namespace="users")
        posts = CacheService(redis_client, namespace="posts")

        await users.set("list:1", 1)
        await posts.set("list:1", 1)

        assert await users.delete_pattern("list:*") == 1
        assert await posts.exists("list:1") is True


class TestTags:
    """Test tag registration and invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_disjoint_tags(self, cache):
        await cache.set("user:1", {"id": 1}, tags=["users"])
        await cache.set("user:2", {"id": 2}, tags=["users"])
        await cache.set("post:1", {"id": 1}, tags=["posts"])

        assert await cache.invalidate_by_tags(["users"]) == 2

        assert await cache.get("user:1") is None
        assert await cache.get("user:2") is None
        assert await cache.get("post:1") == {"id": 1}

    @pytest.mark.asyncio
    async def test_second_invalidation_returns_zero(self, cache):
        await cache.set("user:1", {"id": 1}, tags=["users"])

        assert await cache.invalidate_by_tags(["users"]) == 1
        assert await cache.invalidate_by_tags(["users"]) == 0

    @pytest.mark.asyncio
    async def test_entry_with_multiple_tags(self, cache):
        await cache.set("feed", [1, 2], tags=["users", "posts"])

        assert await cache.invalidate_by_tags(["posts"]) == 1
        assert await cache.exists("feed") is False
        # The users tag still lists the deleted key; it is not counted
        assert await cache.invalidate_by_tags(["users"]) == 0

    @pytest.mark.asyncio
    async def test_unknown_tag(self, cache):
        assert await cache.invalidate_by_tags(["ghost"]) == 0

    @pytest.mark.asyncio
    async def test_tag_set_layout(self, cache, redis_client):
        await cache.set("user:1", {"id": 1}, tags=["users"])
        assert await redis_client.smembers("test:tag:users") == {"test:user:1"}

    @pytest.mark.asyncio
    async def test_tag_expiry_is_never_shortened(self, cache, redis_client):
        await cache.set("a", 1, ttl=100, tags=["t"])
        assert 90 < await redis_client.ttl("test:tag:t") <= 100

        await cache.set("b", 1, ttl=10, tags=["t"])
        assert 90 < await redis_client.ttl("test:tag:t") <= 100

        await cache.set("c", 1, ttl=500, tags=["t"])
        assert 490 < await redis_client.ttl("test:tag:t") <= 500

    @pytest.mark.asyncio
    async def test_entry_written_with_set_ex(self, cache, redis_client):
        await cache.set("user:1", {"id": 1}, ttl=45)

        assert await redis_client.get("test:user:1") == '{"id":1}'
        assert 40 < await redis_client.ttl("test:user:1") <= 45

    @pytest.mark.asyncio
    async def test_serialized_text_kept_verbatim(self, cache):
        text = '{"b": [1, 2], "a": "\u00e9"}'

        assert await cache.set_serialized("raw", text, ttl=30) is True

        assert await cache.fetch_serialized("raw") == text
        assert await cache.get("raw") == {"b": [1, 2], "a": "\u00e9"}
        assert await cache.fetch_serialized("absent") is MISSING


def pipelined_redis(results):
    """Mocked client whose pipeline returns ``results`` from execute()."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=results)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    client = MagicMock()
    client.pipeline = MagicMock(return_value=context)
    client.ttl = AsyncMock(return_value=-1)
    client.expire = AsyncMock(return_value=True)
    return client, pipe


class TestPipelineResults:
    """Test handling of per-command pipeline errors."""

    @pytest.mark.asyncio
    async def test_uses_set_with_expiry(self):
        client, pipe = pipelined_redis([True, 1, True, False])
        cache = CacheService(client, namespace="test")

        assert await cache.set("k", {"a": 1}, ttl=60, tags=["users"]) is True

        pipe.set.assert_called_once_with("test:k", '{"a":1}', ex=60)
        pipe.setex.assert_not_called()
        pipe.execute.assert_awaited_once_with(raise_on_error=False)
        client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expire_flags_rejected_falls_back(self):
        rejected = ResponseError("wrong number of arguments for 'expire' command")
        client, _ = pipelined_redis([True, 1, rejected, rejected])
        cache = CacheService(client, namespace="test")

        assert await cache.set("k", {"a": 1}, ttl=60, tags=["users"]) is True

        client.ttl.assert_awaited_once_with("test:tag:users")
        client.expire.assert_awaited_once_with("test:tag:users", 60)

    @pytest.mark.asyncio
    async def test_fallback_never_shortens_tag_expiry(self):
        rejected = ResponseError("syntax error")
        client, _ = pipelined_redis([True, 1, rejected, rejected])
        client.ttl = AsyncMock(return_value=300)
        cache = CacheService(client, namespace="test")

        assert await cache.set("k", 1, ttl=60, tags=["users"]) is True

        client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_write_returns_false(self):
        client, _ = pipelined_redis([ResponseError("OOM"), 1, True, False])
        cache = CacheService(client, namespace="test")

        assert await cache.set("k", 1, tags=["users"]) is False
        client.expire.assert_not_awaited()


class TestDeletePattern:
    """Test SCAN-based pattern deletion."""

    @pytest.mark.asyncio
    async def test_delete_matching_keys(self, cache):
        await cache.set("list:1", [1])
        await cache.set("list:2", [2])
        await cache.set("search:x", {"q": "x"})

        assert await cache.delete_pattern("list:*") == 2

        assert await cache.exists("list:1") is False
        assert await cache.exists("list:2") is False
        assert await cache.get("search:x") == {"q": "x"}

    @pytest.mark.asyncio
    async def test_no_match(self, cache):
        assert await cache.delete_pattern("nothing:*") == 0

    @pytest.mark.asyncio
    async def test_more_keys_than_one_batch(self, cache):
        for i in range(250):
            await cache.set(f"bulk:{i}", i)

        assert await cache.delete_pattern("bulk:*") == 250


class TestGetOrSet:
    """Test cache-aside helper."""

    @pytest.mark.asyncio
    async def test_fetcher_runs_once(self, cache):
        fetcher = AsyncMock(return_value={"id": 7})

        first = await cache.get_or_set("user:7", fetcher)
        second = await cache.get_or_set("user:7", fetcher)

        assert first == second == {"id": 7}
        fetcher.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_fetcher(self, cache):
        calls = []

        def fetcher():
            calls.append(1)
            return [1, 2, 3]

        assert await cache.get_or_set("numbers", fetcher) == [1, 2, 3]
        assert await cache.get_or_set("numbers", fetcher) == [1, 2, 3]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cached_none_counts_as_hit(self, cache):
        fetcher = AsyncMock(return_value=None)

        assert await cache.get_or_set("empty", fetcher) is None
        assert await cache.get_or_set("empty", fetcher) is None
        fetcher.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tags_and_ttl_forwarded(self, cache):
        await cache.get_or_set("user:1", AsyncMock(return_value=1), ttl=20, tags=["users"])

        assert 0 < await cache.ttl("user:1") <= 20
        assert await cache.invalidate_by_tags(["users"]) == 1

    @pytest.mark.asyncio
    async def test_fetcher_error_propagates(self, cache):
        fetcher = AsyncMock(side_effect=LookupError("not found"))

        with pytest.raises(LookupError):
            await cache.get_or_set("user:404", fetcher)
        assert await cache.exists("user:404") is False

    @pytest.mark.asyncio
    async def test_broken_cache_still_returns_data(self, broken_redis):
        cache = CacheService(broken_redis, namespace="test")
        fetcher = AsyncMock(return_value={"ok": True})

        assert await cache.get_or_set("k", fetcher) == {"ok": True}
        fetcher.assert_awaited_once()


class TestCounters:
    """Test counters and existence checks."""

    @pytest.mark.asyncio
    async def test_incr_is_monotonic(self, cache):
        assert await cache.incr("hits") == 1
        assert await cache.incr("hits") == 2
        assert await cache.incr("hits") == 3

    @pytest.mark.asyncio
    async def test_exists(self, cache):
        assert await cache.exists("k") is False
        await cache.set("k", "v")
        assert await cache.exists("k") is True

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        assert await cache.health_check() is True


class TestFailureFallbacks:
    """Store failures degrade to neutral values."""

    @pytest.fixture
    def broken_cache(self, broken_redis):
        return CacheService(broken_redis, namespace="test")

    @pytest.mark.asyncio
    async def test_get_returns_default(self, broken_cache):
        assert await broken_cache.get("k") is None
        assert await broken_cache.get("k", default=0) == 0

    @pytest.mark.asyncio
    async def test_fetch_raises(self, broken_cache):
        with pytest.raises(CacheOperationException) as exc_info:
            await broken_cache.fetch("k")
        assert exc_info.value.details["key"] == "test:k"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_writes_return_false(self, broken_cache):
        assert await broken_cache.set("k", "v") is False
        assert await broken_cache.delete("k") is False

    @pytest.mark.asyncio
    async def test_unserializable_value_is_not_stored(self, cache):
        assert await cache.set("k", {"when": object()}) is False
        assert await cache.exists("k") is False

    @pytest.mark.asyncio
    async def test_counts_return_zero(self, broken_cache):
        assert await broken_cache.invalidate_by_tags(["users"]) == 0
        assert await broken_cache.delete_pattern("list:*") == 0
        assert await broken_cache.incr("hits") == 0

    @pytest.mark.asyncio
    async def test_queries_return_neutral_values(self, broken_cache):
        assert await broken_cache.exists("k") is False
        assert await broken_cache.ttl("k") == -1
        assert await broken_cache.health_check() is False
