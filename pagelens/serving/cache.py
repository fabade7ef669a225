"""
Redis Cache Module

Short-TTL cache of computed comparison payloads:
- Connection pooling
- Content-addressed keys (stable hash of the request parameters)
- Per-tenant scoping and invalidation
- Lazy expiry on read

Caching is best-effort: read errors are misses, write errors are logged.
"""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from prometheus_client import Counter
from redis.asyncio import Redis, ConnectionPool

from pagelens.config import get_settings

logger = structlog.get_logger(__name__)

CACHE_LOOKUPS = Counter(
    "pagelens_cache_lookups_total",
    "Comparison cache lookups by result",
    ["result"],
)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )

    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def cache_key(params: Dict[str, Any]) -> str:
    """
    Stable hash of request parameters.

    Keys are sorted at every level before serialization so parameter
    ordering never changes the key.
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


class ComparisonCache:
    """
    Tenant-scoped cache of comparison payloads.

    Entries are stored as {"expires_at": iso, "payload": ...} under
    "<namespace>:<tenant>:<key>" with a matching Redis TTL.

    Example:
        cache = ComparisonCache()
        key = cache_key({"urls": urls, "dateRange": date_range})
        payload = await cache.get("shop.myshopify.com", key)
    """

    def __init__(
        self,
        namespace: Optional[str] = None,
        default_ttl: Optional[int] = None,
        client_factory: Callable[[], Redis] = get_redis,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        settings = get_settings()
        self.namespace = namespace or settings.cache.namespace
        self.default_ttl = default_ttl or settings.cache.ttl_seconds
        self._client_factory = client_factory
        self._clock = clock

    def _key(self, tenant_id: str, key: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{tenant_id}:{key}"

    async def get(self, tenant_id: str, key: str) -> Optional[Any]:
        """Cached payload, or None on miss, error or expiry."""
        redis_key = self._key(tenant_id, key)
        try:
            client = self._client_factory()
            raw = await client.get(redis_key)
        except Exception as e:
            CACHE_LOOKUPS.labels(result="error").inc()
            logger.warning("Cache read failed", tenant=tenant_id, error=str(e))
            return None

        if raw is None:
            CACHE_LOOKUPS.labels(result="miss").inc()
            return None

        try:
            entry = json.loads(raw)
            expires_at = datetime.fromisoformat(entry["expires_at"])
            payload = entry["payload"]
        except (TypeError, ValueError, KeyError) as e:
            CACHE_LOOKUPS.labels(result="error").inc()
            logger.warning("Cache entry unreadable", tenant=tenant_id, error=str(e))
            return None

        if self._clock() >= expires_at:
            CACHE_LOOKUPS.labels(result="expired").inc()
            try:
                await client.delete(redis_key)
            except Exception as e:
                logger.warning("Expired cache entry not deleted", tenant=tenant_id, error=str(e))
            return None

        CACHE_LOOKUPS.labels(result="hit").inc()
        return payload

    async def set(self, tenant_id: str, key: str, payload: Any, ttl: Optional[int] = None) -> bool:
        """Upsert a payload; failures are logged and reported as False."""
        ttl = ttl or self.default_ttl
        if isinstance(ttl, timedelta):
            ttl = int(ttl.total_seconds())

        expires_at = self._clock() + timedelta(seconds=ttl)
        try:
            serialized = json.dumps({"expires_at": expires_at.isoformat(), "payload": payload}, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize value for cache", error=str(e))
            return False

        try:
            client = self._client_factory()
            await client.setex(self._key(tenant_id, key), ttl, serialized)
        except Exception as e:
            logger.warning("Cache write failed", tenant=tenant_id, error=str(e))
            return False
        return True

    async def invalidate_all(self, tenant_id: str) -> int:
        """Delete every entry of a tenant"""
        try:
            client = self._client_factory()
            keys = [k async for k in client.scan_iter(match=self._key(tenant_id, "*"))]
            if not keys:
                return 0
            deleted = await client.delete(*keys)
        except Exception as e:
            logger.warning("Cache invalidation failed", tenant=tenant_id, error=str(e))
            return 0

        logger.info("Cache invalidated", tenant=tenant_id, deleted=deleted)
        return deleted
