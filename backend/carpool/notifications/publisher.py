"""
Fire-and-forget envelope publishing.

``publish`` never raises: every outcome, including transport errors, comes
back as a ``PublishResult``. Business operations have already committed by
the time anything is published, so a delivery failure is logged and counted,
never propagated.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional

from carpool.core.logging import get_logger
from carpool.core.metrics import record_publish
from carpool.notifications.envelopes import Envelope
from carpool.notifications.transport import NotificationTransport

logger = get_logger(__name__)


class PublishStatus:
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PublishResult:
    status: str
    correlation_id: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (PublishStatus.SENT, PublishStatus.DUPLICATE)


@dataclass(frozen=True)
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class AsyncPublisher:
    def __init__(self, transport: Optional[NotificationTransport] = None):
        self.transport = transport

    @property
    def configured(self) -> bool:
        return self.transport is not None

    async def publish(self, envelope: Envelope) -> PublishResult:
        if self.transport is None:
            logger.debug(
                "publish_skipped",
                reason="transport_unconfigured",
                template=envelope.payload.template,
            )
            record_publish(PublishStatus.SKIPPED)
            return PublishResult(PublishStatus.SKIPPED, envelope.correlation_id)

        try:
            enqueued = await self.transport.send(envelope)
        except Exception as e:
            logger.warning(
                "publish_failed",
                template=envelope.payload.template,
                recipient_id=envelope.recipient.user_id,
                correlation_id=envelope.correlation_id,
                error=str(e),
            )
            record_publish(PublishStatus.FAILED)
            return PublishResult(PublishStatus.FAILED, envelope.correlation_id, error=str(e))

        if not enqueued:
            logger.info("publish_duplicate", correlation_id=envelope.correlation_id)
            record_publish(PublishStatus.DUPLICATE)
            return PublishResult(PublishStatus.DUPLICATE, envelope.correlation_id)

        logger.info(
            "publish_sent",
            template=envelope.payload.template,
            recipient_id=envelope.recipient.user_id,
            correlation_id=envelope.correlation_id,
        )
        record_publish(PublishStatus.SENT)
        return PublishResult(PublishStatus.SENT, envelope.correlation_id)

    async def publish_batch(self, envelopes: Iterable[Envelope]) -> BatchResult:
        """
        Publish every envelope concurrently. Each attempt is independent, so
        one failure never prevents the others from being sent.
        """
        envelopes = list(envelopes)
        if not envelopes:
            return BatchResult()

        results = await asyncio.gather(
            *(self.publish(envelope) for envelope in envelopes),
            return_exceptions=True,
        )

        succeeded = failed = skipped = 0
        for result in results:
            if isinstance(result, BaseException):
                failed += 1
            elif result.status == PublishStatus.SKIPPED:
                skipped += 1
            elif result.ok:
                succeeded += 1
            else:
                failed += 1

        if failed:
            logger.warning("publish_batch_partial_failure", succeeded=succeeded, failed=failed)
        return BatchResult(succeeded=succeeded, failed=failed, skipped=skipped)
