# studymate/services/infrastructure/redis_client.py
"""
Pooled async Redis client shared by the score cache and health checks.

Every operation degrades to a logged miss / no-op when Redis is down so
callers can always fall back to the authoritative store.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Connection-pooled Redis operations with fallback handling."""

    def __init__(
        self,
        url: str,
        *,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
    ):
        self.url = url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        """Get value - with fallback handling"""
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:40], error=str(e))
            return None

    async def mget(self, keys: list[str]) -> list[str | None]:
        """Fetch many keys in one round trip; every slot is None on failure."""
        if not keys:
            return []
        try:
            await self._ensure_initialized()
            result = await self.client.mget(keys)
            return [value if value else None for value in result]
        except Exception as e:
            logger.error("Redis MGET failed", key_count=len(keys), error=str(e))
            return [None] * len(keys)

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """Set value with TTL - with fallback handling"""
        try:
            await self._ensure_initialized()

            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:40], error=str(e))
            return False

    async def set_many_with_ttl(self, items: dict[str, str], ttl_s: int) -> bool:
        """Write many keys with a shared TTL through a single pipeline."""
        if not items:
            return True
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    pipe.setex(key, ttl_s, value)
                results = await pipe.execute()
            return all(bool(r) for r in results)
        except Exception as e:
            logger.error("Redis pipelined SET failed", key_count=len(items), error=str(e))
            return False

    async def ttl(self, key: str) -> int | None:
        """Remaining TTL in seconds; None when unknown or no expiry."""
        try:
            await self._ensure_initialized()
            result = await self.client.ttl(key)
            return int(result) if result is not None and result >= 0 else None
        except Exception as e:
            logger.error("Redis TTL failed", key=key[:40], error=str(e))
            return None

    async def delete(self, key: str) -> bool:
        """Delete key - with fallback handling"""
        try:
            await self._ensure_initialized()
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            logger.error("Redis DELETE failed", key=key[:40], error=str(e))
            return False

    async def delete_many(self, keys: list[str]) -> int:
        """Delete keys in one call and return how many were removed."""
        if not keys:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Redis bulk DELETE failed", key_count=len(keys), error=str(e))
            return 0

    async def scan_keys(self, pattern: str, count: int = 500) -> list[str]:
        """Collect keys matching a glob pattern using incremental SCAN."""
        try:
            await self._ensure_initialized()
            return [key async for key in self.client.scan_iter(match=pattern, count=count)]
        except Exception as e:
            logger.error("Redis SCAN failed", pattern=pattern[:40], error=str(e))
            return []

    async def info(self, section: str | None = None) -> dict:
        """Server INFO as a dict; empty when unavailable."""
        try:
            await self._ensure_initialized()
            return await self.client.info(section) if section else await self.client.info()
        except Exception as e:
            logger.error("Redis INFO failed", section=section, error=str(e))
            return {}
