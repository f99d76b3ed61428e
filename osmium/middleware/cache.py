"""
Cache Middleware

ASGI middleware that serves and stores cached JSON responses for GET
requests and invalidates related entries after successful mutations.

Responses are observed by wrapping the downstream ``send`` callable, so any
framework response class works and nothing on the response is patched.
"""

import asyncio
import hashlib
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from opentelemetry import trace
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..constants import CACHE_KEY_HEADER, CACHE_STATUS_HEADER, MUTATION_METHODS
from ..core import tasks
from ..infrastructure.redis.connection_factory import RedisClient
from ..infrastructure.redis.exceptions import CacheOperationException
from ..services.cache.cache_service import MISSING, CacheService
from .config import CacheConfig, CacheStrategy

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def extract_user_id(request: Request) -> Optional[str]:
    """
    Default user id lookup for user-scoped cache keys.

    Checks request.state.user, then scope["user"] (AuthenticationMiddleware).
    Accepts objects with ``id``/``identity`` attributes and dicts with ``id``.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        user = request.scope.get("user")
    if user is None or not getattr(user, "is_authenticated", True):
        return None

    if isinstance(user, dict):
        user_id = user.get("id")
    else:
        user_id = getattr(user, "id", None)
        if user_id is None:
            try:
                user_id = getattr(user, "identity", None)
            except NotImplementedError:
                user_id = None

    return str(user_id) if user_id not in (None, "") else None


def generate_cache_key(
    request: Request,
    include_auth: bool = False,
    user_id_extractor: Optional[Callable[[Request], Optional[str]]] = None,
) -> str:
    """
    Derive a deterministic cache key from the request.

    Format: ``METHOD:path[:md5(sorted query)][:user:<id>]``. Query pairs are
    sorted by name; repeated parameters are joined with commas.
    """
    parts = [request.method, request.url.path]

    query_params = request.query_params
    if query_params:
        query_string = "&".join(
            f"{name}={','.join(query_params.getlist(name))}"
            for name in sorted(query_params.keys())
        )
        parts.append(hashlib.md5(query_string.encode("utf-8")).hexdigest())

    if include_auth:
        extractor = user_id_extractor or extract_user_id
        user_id = extractor(request)
        if user_id:
            parts.append(f"user:{user_id}")

    return ":".join(parts)


def is_json_media_type(headers: Headers) -> bool:
    media_type = headers.get("content-type", "").split(";")[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


@dataclass
class ResponseSnapshot:
    """
    Status, headers and body of a response that has been fully sent.

    ``body`` is empty unless the interceptor captured it.
    """

    status_code: int
    headers: Headers
    body: bytes = b""
    _data: Any = field(default=MISSING, repr=False)

    @property
    def is_successful(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_json(self) -> bool:
        return is_json_media_type(self.headers)

    @property
    def data(self) -> Any:
        """Decoded JSON body, or None for non-JSON or malformed bodies."""
        if self._data is MISSING:
            self._data = None
            if self.is_json and self.body:
                try:
                    self._data = json.loads(self.body)
                except ValueError:
                    logger.debug("Response body is not valid JSON")
        return self._data


class ResponseInterceptor:
    """
    Wraps an ASGI ``send`` callable.

    Adds headers to the response start and calls ``on_complete`` with a
    ResponseSnapshot right after the final body chunk has been passed on.
    With ``capture_body`` the body of a 2xx JSON response is kept for the
    snapshot; any other response streams through without being buffered.
    """

    def __init__(
        self,
        send: Send,
        extra_headers: Optional[Dict[str, str]] = None,
        on_complete: Optional[Callable[[ResponseSnapshot], None]] = None,
        capture_body: bool = False,
    ):
        self._send = send
        self._extra_headers = extra_headers or {}
        self._on_complete = on_complete
        self._capture_body = capture_body
        self._capturing = False
        self._status_code: Optional[int] = None
        self._headers: Optional[Headers] = None
        self._body: List[bytes] = []
        self.snapshot: Optional[ResponseSnapshot] = None

    @property
    def buffered_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._body)

    async def __call__(self, message: Message) -> None:
        finished = False

        if message["type"] == "http.response.start":
            self._status_code = message["status"]
            if self._extra_headers:
                message["headers"] = list(message.get("headers", []))
                headers = MutableHeaders(scope=message)
                for name, value in self._extra_headers.items():
                    headers[name] = value
            self._headers = Headers(raw=list(message.get("headers", [])))
            self._capturing = (
                self._capture_body
                and 200 <= self._status_code < 300
                and is_json_media_type(self._headers)
            )

        elif message["type"] == "http.response.body":
            if self._capturing:
                self._body.append(message.get("body", b""))
            finished = not message.get("more_body", False)

        await self._send(message)

        if finished and self.snapshot is None and self._status_code is not None:
            self.snapshot = ResponseSnapshot(
                status_code=self._status_code,
                headers=self._headers or Headers(),
                body=b"".join(self._body),
            )
            self._body = []
            if self._on_complete is not None:
                self._on_complete(self.snapshot)


class CacheMiddleware:
    """
    Unified cache middleware.

    Supports:
    - Auto-caching for GET requests (X-Cache: HIT/MISS/ERROR)
    - Tag, pattern and key invalidation for mutations
    - User-specific cache keys
    - Non-blocking invalidation after the response
    - Manual cache control via request.state.cache

    Usage:
        app.add_middleware(
            CacheMiddleware,
            redis_client=redis,
            config=CacheConfig(ttl=300, auto_cache=AutoCacheConfig(tags=["users"])),
        )
    """

    def __init__(
        self,
        app: ASGIApp,
        redis_client: RedisClient,
        config: Optional[CacheConfig] = None,
    ):
        self.app = app
        self.redis_client = redis_client
        self.config = config or CacheConfig()
        self.exclude_paths = tuple(self.config.exclude_paths)

    def _is_excluded(self, path: str) -> bool:
        return any(
            path == excluded or path.startswith(excluded.rstrip("/") + "/")
            for excluded in self.exclude_paths
        )

    def create_cache_service(self) -> CacheService:
        return CacheService(
            self.redis_client,
            namespace=self.config.namespace,
            default_ttl=self.config.ttl,
            compression_threshold=self.config.compression_threshold,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_excluded(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        cache = self.create_cache_service()
        request.state.cache = cache

        if self.config.strategy is not CacheStrategy.AUTO:
            await self.app(scope, receive, send)
            return

        method = scope["method"]

        with tracer.start_as_current_span("cache_middleware.dispatch") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.path", request.url.path)

            if method == "GET" and self.config.auto_cache.enabled:
                await self._handle_read(request, cache, send, span)
            elif method in MUTATION_METHODS and self.config.invalidate.enabled:
                await self._handle_mutation(request, cache, send)
            else:
                await self.app(scope, receive, send)

    async def _handle_read(
        self, request: Request, cache: CacheService, send: Send, span
    ) -> None:
        auto_cache = self.config.auto_cache
        scope, receive = request.scope, request.receive

        if auto_cache.condition is not None:
            if not await _maybe_await(auto_cache.condition(request)):
                span.set_attribute("cache.status", "SKIP")
                await self.app(scope, receive, send)
                return

        if auto_cache.key_generator is not None:
            cache_key = await _maybe_await(auto_cache.key_generator(request))
        else:
            cache_key = generate_cache_key(
                request, auto_cache.include_auth, auto_cache.user_id_extractor
            )
        request.state.cache_key = cache_key
        span.set_attribute("cache.key", cache_key)

        try:
            cached = await cache.fetch_serialized(cache_key)
        except CacheOperationException as e:
            logger.error("Auto-cache error", cache_key=cache_key, error=str(e))
            span.set_attribute("cache.status", "ERROR")
            await self.app(
                scope,
                receive,
                ResponseInterceptor(send, extra_headers={CACHE_STATUS_HEADER: "ERROR"}),
            )
            return

        if cached is not MISSING:
            span.set_attribute("cache.status", "HIT")
            response = Response(
                cached,
                media_type="application/json",
                headers={CACHE_STATUS_HEADER: "HIT", CACHE_KEY_HEADER: cache_key},
            )
            await response(scope, receive, send)
            return

        span.set_attribute("cache.status", "MISS")

        def store(snapshot: ResponseSnapshot) -> None:
            if snapshot.is_successful and snapshot.is_json:
                tasks.spawn(
                    self._store_response(request, cache, cache_key, snapshot),
                    name=f"cache-store:{cache_key}",
                )

        await self.app(
            scope,
            receive,
            ResponseInterceptor(
                send,
                extra_headers={CACHE_STATUS_HEADER: "MISS", CACHE_KEY_HEADER: cache_key},
                on_complete=store,
                capture_body=True,
            ),
        )

    async def _store_response(
        self,
        request: Request,
        cache: CacheService,
        cache_key: str,
        snapshot: ResponseSnapshot,
    ) -> None:
        try:
            payload = snapshot.body.decode("utf-8")
            json.loads(payload)
        except ValueError:
            logger.debug("Response body is not valid JSON", cache_key=cache_key)
            return

        try:
            tags = await self._resolve(self.config.auto_cache.tags, request)
            stored = await cache.set_serialized(
                cache_key, payload, self.config.ttl, tags
            )
            if stored:
                logger.debug("Response cached", cache_key=cache_key, tags=tags)
        except Exception as e:
            logger.error("Cache set error", cache_key=cache_key, error=str(e))

    async def _handle_mutation(
        self, request: Request, cache: CacheService, send: Send
    ) -> None:
        after_response = self.config.invalidate.after_response

        def schedule(snapshot: ResponseSnapshot) -> None:
            if snapshot.is_successful:
                tasks.spawn(
                    self._invalidate(request, cache, snapshot),
                    name=f"cache-invalidate:{request.method} {request.url.path}",
                )

        interceptor = ResponseInterceptor(
            send,
            on_complete=schedule if after_response else None,
            capture_body=self._resolvers_need_body(),
        )
        await self.app(request.scope, request.receive, interceptor)

        # Response is complete; invalidate before returning control
        snapshot = interceptor.snapshot
        if not after_response and snapshot is not None and snapshot.is_successful:
            await self._invalidate(request, cache, snapshot)

    def _resolvers_need_body(self) -> bool:
        invalidate = self.config.invalidate
        return any(
            callable(option)
            for option in (invalidate.tags, invalidate.patterns, invalidate.keys)
        )

    async def _invalidate(
        self, request: Request, cache: CacheService, snapshot: ResponseSnapshot
    ) -> None:
        invalidate = self.config.invalidate

        try:
            data = snapshot.data
            tags = await self._resolve(invalidate.tags, request, snapshot, data)
            patterns = await self._resolve(invalidate.patterns, request, snapshot, data)
            keys = await self._resolve(invalidate.keys, request, snapshot, data)

            operations: List[Awaitable[Any]] = []
            if tags:
                operations.append(cache.invalidate_by_tags(tags))
            operations.extend(cache.delete_pattern(pattern) for pattern in patterns)
            operations.extend(cache.delete(key) for key in keys)

            if not operations:
                return

            await asyncio.gather(*operations)

            logger.info(
                "Cache invalidated",
                method=request.method,
                path=request.url.path,
                tags=tags,
                patterns=patterns,
                keys=keys,
            )

        except Exception as e:
            logger.error(
                "Cache invalidation error",
                method=request.method,
                path=request.url.path,
                error=str(e),
            )

    @staticmethod
    async def _resolve(option: Any, *args: Any) -> List[str]:
        """Resolve a static list or a (possibly async) callable into a list."""
        if option is None:
            return []
        if callable(option):
            option = await _maybe_await(option(*args))
        return list(option or [])
