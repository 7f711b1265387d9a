# mailflow/services/cache.py
"""
Read-through cache for hot relational lookups (projects by id or key).

Kept apart from the lock store: cache entries may be lost or stale at any time
and every miss falls back to the loader.
"""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ReadThroughCache:
    def __init__(self, client: FastRedisClient | None = None):
        self.client = client or fast_redis

    async def wrap(
        self,
        key: str,
        loader: Callable[[], Awaitable[ModelT | None]],
        model: type[ModelT],
        ttl_s: int | None = None,
    ) -> ModelT | None:
        """Return the cached model for ``key``, loading and storing it on a miss."""
        cached = await self.client.get(key)
        if cached:
            try:
                return model.model_validate_json(cached)
            except ValidationError:
                logger.warning("Discarding unreadable cache entry", key=key)
                await self.client.delete(key)

        value = await loader()
        if value is not None:
            await self.client.set_with_ttl(
                key, value.model_dump_json(), ttl_s or settings.CACHE_TTL_SECONDS
            )
        return value


read_through_cache = ReadThroughCache()
