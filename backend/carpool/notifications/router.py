"""
Routes change events to the side-effect processor registered for their
entity type.

One bad record never stops a batch: a processor exception is logged with the
record's identity, counted as errored, and routing continues with the next
event. Events whose entity type has no processor are counted as skipped.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from carpool.core.logging import bound_change_record, get_logger
from carpool.core.metrics import record_change_event
from carpool.notifications.change_events import ChangeEvent, ChangeKind, EntityType

logger = get_logger(__name__)


class ChangeProcessor(Protocol):
    async def process(
        self,
        kind: ChangeKind,
        before: Optional[dict],
        after: Optional[dict],
        record_id: Optional[int] = None,
    ) -> None: ...


@dataclass
class RouteTally:
    processed: int = 0
    skipped: int = 0
    errored: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.errored

    def merge(self, other: "RouteTally") -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.errored += other.errored


class ChangeEventRouter:
    def __init__(self, processors: Mapping[EntityType, ChangeProcessor]):
        self.processors = dict(processors)

    async def route(self, events: Iterable[ChangeEvent]) -> RouteTally:
        tally = RouteTally()

        for event in events:
            processor = self.processors.get(event.entity_type)
            if processor is None:
                logger.debug(
                    "change_event_skipped",
                    entity_type=event.entity_type.value,
                    record_id=event.record_id,
                )
                tally.skipped += 1
                record_change_event(event.entity_type.value, "skipped")
                continue

            try:
                with bound_change_record(event.record_id, event.entity_type.value, event.kind.value):
                    await processor.process(
                        event.kind, event.before, event.after, record_id=event.record_id
                    )
            except Exception:
                logger.exception(
                    "change_event_failed",
                    entity_type=event.entity_type.value,
                    entity_id=event.entity_id,
                    kind=event.kind.value,
                    record_id=event.record_id,
                )
                tally.errored += 1
                record_change_event(event.entity_type.value, "errored")
                continue

            tally.processed += 1
            record_change_event(event.entity_type.value, "processed")

        if tally.errored:
            logger.warning(
                "change_batch_routed",
                processed=tally.processed,
                skipped=tally.skipped,
                errored=tally.errored,
            )
        else:
            logger.info(
                "change_batch_routed",
                processed=tally.processed,
                skipped=tally.skipped,
                errored=tally.errored,
            )
        return tally
