"""
Change-feed outbox: writing change records and draining them.

Managers call ``record_change`` inside the same transaction as the mutation,
so a change record exists if and only if the mutation committed. The
``ChangeFeedConsumer`` polls unprocessed records in id order, converts them
to ``ChangeEvent`` values and hands them to the router.

DELIVERY SEMANTICS
==================

At-least-once. Records are marked processed only after the router has seen
them, in the same transaction that selected them. A crash between routing and
commit redelivers the batch; envelope correlation ids are derived from the
fact being notified, so the transport drops the repeats.

Concurrent consumers are safe on PostgreSQL: the batch is selected with
``FOR UPDATE SKIP LOCKED`` so two pollers never route the same record.
"""

import asyncio
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.clock import Clock, utcnow
from carpool.core.logging import get_logger
from carpool.models.change_record import ChangeRecord
from carpool.notifications.change_events import ChangeEvent, ChangeKind, EntityType
from carpool.notifications.router import ChangeEventRouter, RouteTally

logger = get_logger(__name__)


async def record_change(
    db: AsyncSession,
    entity,
    kind: ChangeKind,
    before: Optional[dict] = None,
) -> ChangeRecord:
    """
    Append a change record for ``entity`` to the current transaction.

    ``before`` is the snapshot taken prior to the mutation (None for
    creations). The after image is the entity's current column values, so
    callers must refresh rows written through Core UPDATEs first.
    """
    await db.flush()
    record = ChangeRecord(
        entity_type=entity.__entity_type__,
        entity_id=entity.id,
        kind=kind.value,
        before=before,
        after=None if kind == ChangeKind.REMOVED else entity.snapshot(),
    )
    db.add(record)
    return record


def to_change_event(record: ChangeRecord) -> ChangeEvent:
    return ChangeEvent(
        entity_type=EntityType(record.entity_type),
        kind=ChangeKind(record.kind),
        before=record.before,
        after=record.after,
        record_id=record.id,
    )


class ChangeFeedConsumer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: ChangeEventRouter,
        clock: Clock = utcnow,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.router = router
        self.clock = clock
        self.batch_size = batch_size

    async def drain_once(self) -> RouteTally:
        """Route one batch of unprocessed change records."""
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(ChangeRecord)
                    .where(ChangeRecord.processed_at.is_(None))
                    .order_by(ChangeRecord.id)
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                records = list(result.scalars().all())
                if not records:
                    return RouteTally()

                events = []
                unknown = 0
                for record in records:
                    try:
                        events.append(to_change_event(record))
                    except ValueError:
                        # Unknown entity tag or kind; nothing can handle it
                        logger.warning(
                            "change_record_unroutable",
                            record_id=record.id,
                            entity_type=record.entity_type,
                            kind=record.kind,
                        )
                        unknown += 1

                tally = await self.router.route(events)
                tally.skipped += unknown

                processed_at = self.clock()
                for record in records:
                    record.processed_at = processed_at

        logger.info(
            "change_batch_drained",
            records=len(records),
            processed=tally.processed,
            skipped=tally.skipped,
            errored=tally.errored,
        )
        return tally

    async def drain(self) -> RouteTally:
        """Drain until the outbox holds no unprocessed records."""
        total = RouteTally()
        while True:
            tally = await self.drain_once()
            total.merge(tally)
            if tally.total < self.batch_size:
                return total

    async def run_forever(self, interval: float) -> None:
        logger.info("change_feed_poller_started", interval=interval, batch_size=self.batch_size)
        while True:
            try:
                await self.drain()
            except Exception:
                logger.exception("change_feed_drain_failed")
            await asyncio.sleep(interval)
