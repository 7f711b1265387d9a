# mailflow/services/lock_store.py
"""
Distributed mutual exclusion for scheduler tasks.

A lock is a Redis key created with SET NX EX whose value names the owner.
The only questions it answers are "does somebody else hold this right now"
and, on release, "is it still mine".
"""

import os
import socket
from uuid import uuid4

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class LockStore:
    def __init__(self, client: FastRedisClient | None = None, owner: str | None = None):
        self.client = client or fast_redis
        # Unique per process and instance; release compares against it
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

    async def acquire(self, key: str, ttl_s: int | None = None) -> bool:
        """Take the lease if nobody holds it. Contention is not an error."""
        ttl = ttl_s or settings.TASK_LOCK_TTL_SECONDS
        acquired = await self.client.set_if_absent(key, self.owner, ttl)
        if not acquired:
            logger.debug("Lock held elsewhere", key=key)
        return acquired

    async def release(self, key: str) -> None:
        """
        Drop the lease early; expiry would release it anyway.

        Only a lease this owner still holds is deleted. After expiry the key
        may belong to another worker, and that lease is left alone.
        """
        released = await self.client.delete_if_equals(key, self.owner)
        if not released:
            logger.debug("Lock expired or held by another owner on release", key=key)


lock_store = LockStore()
