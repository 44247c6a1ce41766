"""
Notification transport interface and the Redis list implementation.

The delivery worker (email/SMS/push) lives outside this service and pops
envelopes off the queue. Which transport is used is decided once, at wiring
time; when nothing is configured there is no transport and publishing is a
no-op.
"""

from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

from carpool.core.config import Settings
from carpool.core.logging import get_logger
from carpool.notifications.envelopes import Envelope

logger = get_logger(__name__)


class NotificationTransport(ABC):
    """
    Interface for notification transports.

    Implementations:
    - RedisQueueTransport: LPUSH onto a Redis list, deduplicated by correlation id
    """

    @abstractmethod
    async def send(self, envelope: Envelope) -> bool:
        """
        Hand an envelope to the delivery channel.

        Returns:
            True if the envelope was enqueued
            False if it was recognised as a duplicate and dropped

        Raises on transport failure; the publisher turns that into a result.
        """
        pass


class RedisQueueTransport(NotificationTransport):
    def __init__(self, client: redis.Redis, queue_name: str, dedupe_ttl: int = 86400):
        self.client = client
        self.queue_name = queue_name
        self.dedupe_ttl = dedupe_ttl

    def _dedupe_key(self, envelope: Envelope) -> str:
        return f"{self.queue_name}:seen:{envelope.correlation_id}"

    async def send(self, envelope: Envelope) -> bool:
        # SET NX claims the correlation id; a second claim within the TTL is a repeat
        claimed = await self.client.set(
            self._dedupe_key(envelope), "1", nx=True, ex=self.dedupe_ttl
        )
        if not claimed:
            return False

        try:
            await self.client.lpush(self.queue_name, envelope.to_json())
        except Exception:
            # Release the claim so a retry is not mistaken for a duplicate
            await self.client.delete(self._dedupe_key(envelope))
            raise
        return True


def build_transport(
    settings: Settings, client: Optional[redis.Redis]
) -> Optional[NotificationTransport]:
    if not settings.NOTIFICATION_QUEUE_NAME:
        logger.info("notification_transport_unconfigured")
        return None
    if client is None:
        logger.warning(
            "notification_transport_unavailable",
            queue=settings.NOTIFICATION_QUEUE_NAME,
            reason="redis_disabled_or_unreachable",
        )
        return None

    logger.info("notification_transport_configured", queue=settings.NOTIFICATION_QUEUE_NAME)
    return RedisQueueTransport(
        client,
        settings.NOTIFICATION_QUEUE_NAME,
        dedupe_ttl=settings.NOTIFICATION_DEDUPE_TTL,
    )
