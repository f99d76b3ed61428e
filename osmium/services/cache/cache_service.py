"""
Cache Service

Redis-backed cache with key namespacing, payload encoding for large values,
tag-based invalidation and SCAN-based pattern deletion.

Every public operation fails soft: store and payload errors are logged and
converted to a neutral value so a Redis outage degrades to cache misses.
The one exception is get_or_set(), which propagates errors raised by the
caller's fetcher.
"""

import base64
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

from opentelemetry import trace

from ...constants import (
    COMPRESSION_PREFIX,
    COMPRESSION_THRESHOLD_BYTES,
    DEFAULT_NAMESPACE,
    DEFAULT_TTL_SECONDS,
    DELETE_BATCH_SIZE,
    SCAN_BATCH_SIZE,
    TAG_KEY_SEGMENT,
)
from ...infrastructure.redis.connection_factory import RedisClient
from ...infrastructure.redis.exceptions import CacheOperationException

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Fetcher = Callable[[], Union[Any, Awaitable[Any]]]


class _Missing:
    """Sentinel type for a cache miss, distinct from a cached ``None``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class CacheService:
    """
    Cache service providing Redis operations with namespacing, encoding and tagging.

    Features:
    - Automatic key namespacing to avoid collisions
    - Base64 encoding of values larger than the compression threshold
    - Tag-based cache invalidation
    - Pattern-based deletion with SCAN (non-blocking)
    - TTL management
    - Health checks

    The service holds configuration only; it is cheap to create one per request.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        namespace: str = DEFAULT_NAMESPACE,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        compression_threshold: int = COMPRESSION_THRESHOLD_BYTES,
    ):
        """
        Args:
            redis_client: Redis or RedisCluster instance
            namespace: Cache namespace for key isolation
            default_ttl: Default time to live in seconds
            compression_threshold: Serialized size in bytes above which
                values are stored encoded
        """
        self._redis = redis_client
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._compression_threshold = compression_threshold

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    def make_key(self, key: str, namespace: Optional[str] = None) -> str:
        """Generate namespaced cache key."""
        return f"{namespace or self._namespace}:{key}"

    def _tag_key(self, tag: str) -> str:
        return self.make_key(f"{TAG_KEY_SEGMENT}:{tag}")

    def _pack(self, serialized: str) -> str:
        raw = serialized.encode("utf-8")
        if len(raw) > self._compression_threshold:
            return COMPRESSION_PREFIX + base64.b64encode(raw).decode("ascii")
        return serialized

    @staticmethod
    def _unpack(data: Union[str, bytes]) -> str:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        if data.startswith(COMPRESSION_PREFIX):
            data = base64.b64decode(data[len(COMPRESSION_PREFIX) :]).decode("utf-8")
        return data

    async def fetch_serialized(self, key: str, namespace: Optional[str] = None) -> Any:
        """
        Strict lookup returning the stored JSON text without decoding it.

        Returns:
            The JSON document as stored, or MISSING if the key is absent

        Raises:
            CacheOperationException: If Redis fails or the payload is unreadable
        """
        full_key = self.make_key(key, namespace)

        with tracer.start_as_current_span("cache.fetch") as span:
            span.set_attribute("cache.key", full_key)

            try:
                data = await self._redis.get(full_key)
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise CacheOperationException("get", full_key, e) from e

            if data is None:
                span.set_attribute("cache.hit", False)
                return MISSING

            try:
                payload = self._unpack(data)
            except ValueError as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise CacheOperationException("decode", full_key, e) from e

            span.set_attribute("cache.hit", True)
            return payload

    async def fetch(self, key: str, namespace: Optional[str] = None) -> Any:
        """
        Strict lookup: like get(), but failures raise instead of reading as a miss.

        Returns:
            The cached value, or MISSING if the key is absent

        Raises:
            CacheOperationException: If Redis or payload decoding fails
        """
        payload = await self.fetch_serialized(key, namespace)
        if payload is MISSING:
            return MISSING

        try:
            return json.loads(payload)
        except ValueError as e:
            raise CacheOperationException("decode", self.make_key(key, namespace), e) from e

    async def get(
        self, key: str, namespace: Optional[str] = None, default: Any = None
    ) -> Any:
        """
        Get cached value by key.

        Args:
            key: Cache key
            namespace: Optional namespace override
            default: Returned on a miss or on any failure

        Returns:
            Cached value or default if not found
        """
        try:
            value = await self.fetch(key, namespace)
        except CacheOperationException as e:
            logger.error(
                f"Cache get error for key {self.make_key(key, namespace)}: {e.__cause__}",
                extra=e.details,
            )
            return default

        return default if value is MISSING else value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Set cache value with optional TTL and tags.

        Entry and tag registrations are sent as one pipeline. Each tag set's
        expiry is raised to at least this entry's TTL, never lowered.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Time to live in seconds (default TTL if omitted)
            tags: Tags for invalidation

        Returns:
            Success status
        """
        try:
            serialized = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {self.make_key(key)}: {e}")
            return False

        return await self.set_serialized(key, serialized, ttl, tags)

    async def set_serialized(
        self,
        key: str,
        serialized: str,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Store an already serialized JSON document as is.

        The text is kept byte for byte, so fetch_serialized() returns exactly
        what was stored while get() still decodes it.

        On servers older than Redis 7 the EXPIRE NX/GT flags are rejected;
        the tag expiry is then raised with TTL + EXPIRE round trips instead.
        """
        full_key = self.make_key(key)
        expiry = ttl or self._default_ttl
        tags = list(tags or [])
        tag_keys = [self._tag_key(tag) for tag in tags]

        with tracer.start_as_current_span("cache.set") as span:
            span.set_attribute("cache.key", full_key)
            span.set_attribute("cache.ttl", expiry)
            span.set_attribute("cache.tags", tags)

            try:
                data = self._pack(serialized)

                async with self._redis.pipeline(transaction=False) as pipe:
                    pipe.set(full_key, data, ex=expiry)

                    for tag_key in tag_keys:
                        pipe.sadd(tag_key, full_key)
                        # NX covers a fresh set, GT extends an existing one
                        pipe.expire(tag_key, expiry, nx=True)
                        pipe.expire(tag_key, expiry, gt=True)

                    results = await pipe.execute(raise_on_error=False)

                # Layout: SET, then SADD / EXPIRE NX / EXPIRE GT per tag
                for result in [results[0]] + results[1::3]:
                    if isinstance(result, Exception):
                        raise result

                expire_results = results[2::3] + results[3::3]
                if any(isinstance(result, Exception) for result in expire_results):
                    await self._extend_tag_expiry(tag_keys, expiry)

                logger.debug(
                    f"Cached {full_key}",
                    extra={"key": full_key, "ttl": expiry, "size_bytes": len(data)},
                )
                return True

            except Exception as e:
                logger.error(f"Cache set error for key {full_key}: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return False

    async def _extend_tag_expiry(self, tag_keys: List[str], expiry: int) -> None:
        logger.debug("EXPIRE NX/GT rejected, raising tag expiry with TTL checks")
        for tag_key in tag_keys:
            remaining = await self._redis.ttl(tag_key)
            # -1: no expiry yet
            if remaining < expiry:
                await self._redis.expire(tag_key, expiry)

    async def delete(self, key: str, namespace: Optional[str] = None) -> bool:
        """
        Delete cached value by key.

        Returns:
            True unless Redis failed; deleting an absent key succeeds
        """
        full_key = self.make_key(key, namespace)
        try:
            await self._redis.delete(full_key)
            return True
        except Exception as e:
            logger.error(f"Cache delete error for key {full_key}: {e}")
            return False

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Invalidate all cache entries associated with given tags.

        Tag sets may still list keys that already expired; deleting those is
        a no-op and they are not counted.

        Returns:
            Number of cache entries deleted
        """
        tags = list(tags)

        with tracer.start_as_current_span("cache.invalidate_by_tags") as span:
            span.set_attribute("cache.tags", tags)

            try:
                total_deleted = 0

                for tag in tags:
                    tag_key = self._tag_key(tag)
                    members = await self._redis.smembers(tag_key)

                    if not members:
                        continue

                    async with self._redis.pipeline(transaction=False) as pipe:
                        for member in members:
                            pipe.delete(member)
                        pipe.delete(tag_key)
                        results = await pipe.execute()

                    # Last result is the tag set itself
                    deleted = sum(int(result) for result in results[:-1])
                    total_deleted += deleted

                    logger.debug(
                        f"Invalidated tag {tag}",
                        extra={"tag": tag, "members": len(members), "deleted": deleted},
                    )

                span.set_attribute("cache.deleted", total_deleted)
                return total_deleted

            except Exception as e:
                logger.error(f"Cache invalidation by tags error: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return 0

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a glob pattern using SCAN (non-blocking).

        Matches are collected first, then deleted in batches. The scan is not
        a point-in-time snapshot of a keyspace that is changing meanwhile.

        Args:
            pattern: Pattern relative to the namespace, e.g. 'list:*'

        Returns:
            Number of keys deleted
        """
        full_pattern = self.make_key(pattern)

        with tracer.start_as_current_span("cache.delete_pattern") as span:
            span.set_attribute("cache.pattern", full_pattern)

            try:
                matches: List[str] = []
                async for key in self._redis.scan_iter(
                    match=full_pattern, count=SCAN_BATCH_SIZE
                ):
                    matches.append(key)

                # SCAN may return a key more than once
                keys_to_delete = list(dict.fromkeys(matches))
                total_deleted = 0

                for i in range(0, len(keys_to_delete), DELETE_BATCH_SIZE):
                    batch = keys_to_delete[i : i + DELETE_BATCH_SIZE]
                    total_deleted += await self._redis.delete(*batch)

                span.set_attribute("cache.deleted", total_deleted)
                if total_deleted:
                    logger.info(
                        f"Deleted {total_deleted} keys matching {full_pattern}",
                        extra={"pattern": full_pattern, "count": total_deleted},
                    )
                return total_deleted

            except Exception as e:
                logger.error(f"Cache pattern deletion error for {full_pattern}: {e}")
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return 0

    async def get_or_set(
        self,
        key: str,
        fetcher: Fetcher,
        ttl: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Any:
        """
        Get cached value or set it using a fetcher function.

        A broken cache never hides the data: lookup failures read as a miss
        and write failures leave the fetched value uncached. Exceptions
        raised by the fetcher propagate.

        Args:
            key: Cache key
            fetcher: Coroutine function (or plain callable) producing the value
            ttl: Time to live in seconds
            tags: Tags for invalidation

        Returns:
            Cached or fetched value
        """
        with tracer.start_as_current_span("cache.get_or_set") as span:
            span.set_attribute("cache.key", self.make_key(key))

            cached = await self.get(key, default=MISSING)
            if cached is not MISSING:
                span.set_attribute("cache.hit", True)
                return cached

            span.set_attribute("cache.hit", False)

            data = fetcher()
            if inspect.isawaitable(data):
                data = await data

            await self.set(key, data, ttl, tags)
            return data

    async def exists(self, key: str) -> bool:
        """Check if a key exists in cache."""
        full_key = self.make_key(key)
        try:
            return await self._redis.exists(full_key) > 0
        except Exception as e:
            logger.warning(f"Cache exists error for key {full_key}: {e}")
            return False

    async def ttl(self, key: str) -> int:
        """
        Get TTL (time to live) for a key.

        Returns:
            TTL in seconds, -1 if key has no expiry, -2 if key doesn't exist
        """
        full_key = self.make_key(key)
        try:
            return await self._redis.ttl(full_key)
        except Exception as e:
            logger.warning(f"Cache ttl error for key {full_key}: {e}")
            return -1

    async def incr(self, key: str) -> int:
        """Increment a counter, starting from 0. Returns 0 on failure."""
        full_key = self.make_key(key)
        try:
            return await self._redis.incr(full_key)
        except Exception as e:
            logger.error(f"Cache incr error for key {full_key}: {e}")
            return 0

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")
            return False
