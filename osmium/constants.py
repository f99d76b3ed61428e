"""
Osmium Global Constants

Centralized location for defaults and wire-level constants shared across
the cache service, the client factory and the middleware.
"""

# Cache defaults
DEFAULT_NAMESPACE = "app"
DEFAULT_TTL_SECONDS = 3600
COMPRESSION_THRESHOLD_BYTES = 1024

# Values larger than the threshold are stored as COMPRESSION_PREFIX + base64
COMPRESSION_PREFIX = "compressed:"
TAG_KEY_SEGMENT = "tag"

# SCAN / DEL batching for pattern invalidation
SCAN_BATCH_SIZE = 100
DELETE_BATCH_SIZE = 100

# Redis client defaults
DEFAULT_REDIS_HOST = "localhost"
DEFAULT_REDIS_PORT = 6379
DEFAULT_MAX_RETRIES_PER_REQUEST = 3

# Reconnect backoff: min(cap, base * 2 ** failures)
RECONNECT_BACKOFF_BASE_SECONDS = 0.05
RECONNECT_BACKOFF_CAP_SECONDS = 2.0

# HTTP
CACHE_STATUS_HEADER = "X-Cache"
CACHE_KEY_HEADER = "X-Cache-Key"
MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
DEFAULT_EXCLUDED_PATHS = ("/health", "/metrics", "/docs", "/openapi.json")

APP_NAME = "Osmium"
APP_VERSION = "1.0.0"
