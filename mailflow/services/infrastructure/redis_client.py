# mailflow/services/infrastructure/redis_client.py
"""
Pooled Redis client shared by the lock store, the read-through cache and the
send ledger.

Every operation degrades instead of raising: reads return None, writes and
lock acquisitions return False. Callers treat Redis as advisory.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class FastRedisClient:
    def __init__(self, url: str | None = None):
        self.url = url
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        redis_url = self.url or settings.REDIS_URL
        # Host part only, credentials stay out of the logs
        logger.info("Connecting to Redis", host=redis_url.split("@")[-1][:40])

        try:
            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            await self.client.ping()
        except Exception as e:
            logger.error("Redis connection failed", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

        self._initialized = True
        logger.info("Redis ready", max_connections=settings.REDIS_MAX_CONNECTIONS)

    async def close(self) -> None:
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self._initialized = False

    async def _run(
        self,
        command: str,
        op: Callable[[redis.Redis], Awaitable[T]],
        fallback: T,
        key: str | None = None,
    ) -> T:
        """Run ``op`` against the live client, lazily connecting; log and return ``fallback`` on failure."""
        try:
            if not self._initialized:
                logger.warning("Redis not initialized, connecting lazily", command=command)
                await self.initialize()
            return await op(self.client)
        except Exception as e:
            fields: dict[str, Any] = {"command": command, "error": str(e)}
            if key is not None:
                fields["key"] = key[:40]
            logger.error("Redis command failed", **fields)
            return fallback

    async def ping(self) -> bool:
        return bool(await self._run("PING", lambda c: c.ping(), False))

    async def get(self, key: str) -> str | None:
        value = await self._run("GET", lambda c: c.get(key), None, key)
        return value or None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if ttl_s:
            result = await self._run("SETEX", lambda c: c.setex(key, ttl_s, value), False, key)
        else:
            result = await self._run("SET", lambda c: c.set(key, value), False, key)
        return bool(result)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        """
        SET key value NX EX ttl_s.

        True only when this call created the key. An unreachable server reads
        as "not acquired".
        """
        result = await self._run(
            "SET NX", lambda c: c.set(key, value, nx=True, ex=ttl_s), False, key
        )
        return bool(result)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value``; atomic on the server."""
        result = await self._run(
            "EVAL", lambda c: c.eval(COMPARE_AND_DELETE, 1, key, value), 0, key
        )
        return result == 1

    async def delete(self, key: str) -> bool:
        return await self._run("DEL", lambda c: c.delete(key), 0, key) > 0

    async def exists(self, key: str) -> bool:
        return await self._run("EXISTS", lambda c: c.exists(key), 0, key) > 0


fast_redis = FastRedisClient()
