# mailflow/services/email/send_ledger.py
"""Remembers which deterministic send keys already produced a message."""

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.services import keys
from mailflow.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class SendLedger:
    def __init__(self, client: FastRedisClient | None = None):
        self.client = client or fast_redis

    async def lookup(self, idempotency_key: str) -> str | None:
        """Message id of an earlier successful send for this key, if any."""
        return await self.client.get(keys.send_ledger(idempotency_key))

    async def record(self, idempotency_key: str, message_id: str) -> None:
        stored = await self.client.set_with_ttl(
            keys.send_ledger(idempotency_key), message_id, settings.SEND_LEDGER_TTL_SECONDS
        )
        if not stored:
            # A later retry of the same task may send again
            logger.warning(
                "Send ledger write failed", idempotency_key=idempotency_key, message_id=message_id
            )


send_ledger = SendLedger()
