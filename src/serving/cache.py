"""
Redis Connection Module

Redis client lifecycle plus a namespaced JSON key helper used by the redis
artifact backend:
- Connection pooling
- Automatic serialization
- Namespace scans and invalidation
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from redis.asyncio import Redis, ConnectionPool

from src.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

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


class RedisNamespace:
    """
    JSON values under a key namespace.

    Example:
        artifacts = RedisNamespace("aggregates:artifact")
        await artifacts.set("billing_by_country", payload)
        payload = await artifacts.get("billing_by_country")
    """

    def __init__(self, namespace: str, client: Optional[Redis] = None):
        self.namespace = namespace
        self._client = client

    @property
    def client(self) -> Redis:
        return self._client if self._client is not None else get_redis()

    def _key(self, key: str) -> str:
        """Generate namespaced key"""
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(self._key(key))
        if value is None:
            return None
        return json.loads(value)

    async def set(self, key: str, value: Any) -> None:
        await self.client.set(self._key(key), json.dumps(value, default=str))

    async def delete(self, key: str) -> bool:
        return await self.client.delete(self._key(key)) > 0

    async def all(self) -> Dict[str, Any]:
        """Every value in the namespace, keyed by the un-namespaced key"""
        keys: List[str] = await self.client.keys(f"{self.namespace}:*")
        if not keys:
            return {}
        values = await self.client.mget(keys)
        prefix = len(self.namespace) + 1
        result = {}
        for key, value in zip(keys, values):
            if value is None:
                continue
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            result[key[prefix:]] = json.loads(value)
        return result
