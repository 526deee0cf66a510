"""
Allotment - Cache Service

Redis-based caching for the entitlement core.
Provides caching for:
- Feature definitions (long TTL, catalog rarely changes)
- Aggregated limits per principal and pool feature
- Current usage per principal and pool feature

Invalidation is explicit: every ledger writer forgets the exact keys it
affected. Backend failures are logged and treated as a miss, so a Redis
outage degrades to database reads instead of failing entitlement checks.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as redis

from app.config import get_settings
from app.models.entitlement_enums import Principal
from app.services.entitlement_types import LimitValue

logger = logging.getLogger(__name__)
settings = get_settings()


class CacheService:
    """Redis-based caching service."""

    # Cache key prefixes; the version segment changes whenever the stored
    # shape changes so old entries are simply never read again.
    KEY_VERSION = "v1"
    PREFIX_ENTITLEMENT = f"entitlement:{KEY_VERSION}"
    PREFIX_FEATURE = f"feature:{KEY_VERSION}"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self._client: Optional[redis.Redis] = client

        self.ttl_limit = settings.entitlement_limit_cache_ttl
        self.ttl_usage = settings.entitlement_usage_cache_ttl
        self.ttl_feature = settings.feature_cache_ttl

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # GENERIC CACHE OPERATIONS
    # =========================================================================

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache."""
        try:
            client = await self.get_client()
            return await client.get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int) -> bool:
        """Set a value; every entitlement entry expires, so the TTL is required."""
        try:
            client = await self.get_client()
            await client.setex(key, ttl, value)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> bool:
        """Delete one or more keys from cache."""
        if not keys:
            return True
        try:
            client = await self.get_client()
            await client.delete(*keys)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {', '.join(keys)}: {e}")
            return False

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a JSON value from cache."""
        value = await self.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON in cache for {key}")
            return None

    async def set_json(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        try:
            return await self.set(key, json.dumps(value, default=str), ttl)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache set_json failed for {key}: {e}")
            return False

    # =========================================================================
    # ENTITLEMENT KEYS
    # =========================================================================

    def limit_key(self, principal: Principal, pool_code: str) -> str:
        return f"{self.PREFIX_ENTITLEMENT}:{principal.kind.value}:{principal.id}:limit:{pool_code}"

    def usage_key(self, principal: Principal, pool_code: str) -> str:
        return f"{self.PREFIX_ENTITLEMENT}:{principal.kind.value}:{principal.id}:usage:{pool_code}"

    def feature_key(self, code: str) -> str:
        return f"{self.PREFIX_FEATURE}:{code}"

    # =========================================================================
    # LIMIT CACHING
    # =========================================================================

    async def get_limit(self, principal: Principal, pool_code: str) -> Optional[LimitValue]:
        """Get a cached aggregated limit, or None on a miss."""
        data = await self.get_json(self.limit_key(principal, pool_code))
        if data is None:
            return None
        return LimitValue.from_cache(data)

    async def set_limit(self, principal: Principal, pool_code: str, limit: LimitValue) -> bool:
        return await self.set_json(self.limit_key(principal, pool_code), limit.to_cache(), self.ttl_limit)

    async def forget_limits(self, principal: Principal, pool_codes: Iterable[str]) -> bool:
        """Forget cached limits after a grant mutation."""
        keys = [self.limit_key(principal, code) for code in set(pool_codes)]
        if keys:
            logger.debug(f"Invalidating {len(keys)} limit keys for {principal}")
        return await self.delete(*keys)

    # =========================================================================
    # USAGE CACHING
    # =========================================================================

    async def get_usage(self, principal: Principal, pool_code: str) -> Optional[int]:
        value = await self.get(self.usage_key(principal, pool_code))
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid usage value in cache for {principal}:{pool_code}")
            return None

    async def set_usage(self, principal: Principal, pool_code: str, used: int) -> bool:
        return await self.set(self.usage_key(principal, pool_code), str(int(used)), self.ttl_usage)

    async def forget_usage(self, principals: Iterable[Principal], pool_code: str) -> bool:
        """Forget cached usage for every principal whose window a write touched."""
        keys = [self.usage_key(principal, pool_code) for principal in principals]
        return await self.delete(*keys)

    # =========================================================================
    # FEATURE CACHING
    # =========================================================================

    async def get_feature(self, code: str) -> Optional[Dict[str, Any]]:
        return await self.get_json(self.feature_key(code))

    async def set_feature(self, code: str, data: Dict[str, Any]) -> bool:
        return await self.set_json(self.feature_key(code), data, self.ttl_feature)

    async def forget_feature(self, code: str) -> bool:
        return await self.delete(self.feature_key(code))

    # =========================================================================
    # UTILITY METHODS
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Ping Redis; failures are reported, never raised."""
        try:
            client = await self.get_client()
            await client.ping()
            info = await client.info()
            return {
                "status": "healthy",
                "connected": True,
                "used_memory": info.get("used_memory_human", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
                "key_version": self.KEY_VERSION,
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
            }


# =========================================================================
# GLOBAL CACHE INSTANCE
# =========================================================================

_cache_service: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get global cache service instance."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService()
    return _cache_service


def set_cache_service(cache: Optional[CacheService]) -> None:
    """Replace the global cache service (tests, worker bootstrap)."""
    global _cache_service
    _cache_service = cache


async def close_cache_service():
    """Close global cache service."""
    global _cache_service
    if _cache_service:
        await _cache_service.close()
        _cache_service = None
