"""
Side-effect processors: turn entity transitions into notification intents.

Each processor receives one change (kind, before image, after image), decides
from its transition table who should hear about it, resolves recipient email
addresses, builds envelopes and publishes them as a batch. Reprocessing the
same change yields the same envelopes (same correlation ids), so the only
effect of a redelivery is a dropped duplicate.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.logging import get_logger
from carpool.models.booking import Booking, BookingStatus, CancellationSource
from carpool.models.rating import Rating
from carpool.models.ride import RideStatus
from carpool.models.user import DriverStatus, User
from carpool.notifications.change_events import ChangeKind
from carpool.notifications.envelopes import build_envelope
from carpool.notifications.publisher import AsyncPublisher, BatchResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationIntent:
    recipient_id: int
    template: str
    subject: str
    fact_key: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"
    email: Optional[str] = None


@dataclass(frozen=True)
class Notice:
    template: str
    subject: str
    priority: str = "normal"


# Booking status reached -> (recipient role, notice). "other" is the party that did not cancel.
BOOKING_TRANSITIONS: dict[str, list[tuple[str, Notice]]] = {
    BookingStatus.CONFIRMED: [
        ("passenger", Notice("booking_confirmed", "Booking Confirmed", "high")),
    ],
    BookingStatus.CANCELLED: [
        ("other", Notice("booking_cancelled", "Booking Cancelled")),
    ],
    BookingStatus.IN_PROGRESS: [
        ("passenger", Notice("ride_started", "Ride In Progress")),
    ],
    BookingStatus.COMPLETED: [
        ("passenger", Notice("rate_prompt", "Rate Your Ride")),
        ("driver", Notice("rate_prompt", "Rate Your Passenger")),
    ],
    BookingStatus.NO_SHOW: [
        ("passenger", Notice("no_show", "No-Show Recorded")),
    ],
}

BOOKING_CREATED = Notice("new_booking", "New Booking Request", "high")

RIDE_CANCELLED = Notice("ride_cancelled", "Ride Cancelled", "high")
RIDE_STARTED = Notice("driver_departing", "Driver Is On The Way", "high")

RATING_RECEIVED = Notice("new_rating", "New Rating Received")

USER_WELCOME = Notice("welcome", "Welcome to Carpool!")
DRIVER_DECISIONS: dict[str, Notice] = {
    DriverStatus.VERIFIED: Notice("driver_verified", "Driver Verification Approved", "high"),
    DriverStatus.REJECTED: Notice("driver_rejected", "Driver Verification Rejected", "high"),
}


def status_transition(before: Optional[dict], after: Optional[dict]) -> Optional[str]:
    """The status an entity moved into, or None if its status did not change."""
    if not after:
        return None
    new_status = after.get("status")
    old_status = (before or {}).get("status")
    if new_status == old_status:
        return None
    return new_status


class NotificationProcessor:
    source = "carpool"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], publisher: AsyncPublisher):
        self.session_factory = session_factory
        self.publisher = publisher

    async def process(
        self,
        kind: ChangeKind,
        before: Optional[dict],
        after: Optional[dict],
        record_id: Optional[int] = None,
    ) -> None:
        intents = await self.intents(kind, before, after, record_id)
        if intents:
            await self.dispatch(intents)

    async def intents(
        self,
        kind: ChangeKind,
        before: Optional[dict],
        after: Optional[dict],
        record_id: Optional[int] = None,
    ) -> list[NotificationIntent]:
        raise NotImplementedError

    async def _emails(self, user_ids: set[int]) -> dict[int, str]:
        if not user_ids:
            return {}
        async with self.session_factory() as db:
            result = await db.execute(select(User.id, User.email).where(User.id.in_(user_ids)))
            return {user_id: email for user_id, email in result.all()}

    async def dispatch(self, intents: list[NotificationIntent]) -> BatchResult:
        emails = await self._emails({i.recipient_id for i in intents if i.email is None})
        envelopes = [
            build_envelope(
                recipient_id=intent.recipient_id,
                email=intent.email or emails.get(intent.recipient_id),
                template=intent.template,
                subject=intent.subject,
                data=intent.data,
                source=self.source,
                priority=intent.priority,
                fact_key=intent.fact_key,
            )
            for intent in intents
        ]
        result = await self.publisher.publish_batch(envelopes)
        logger.info(
            "notifications_dispatched",
            source=self.source,
            intents=len(intents),
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result


class BookingChangeProcessor(NotificationProcessor):
    source = "booking-service"

    async def intents(self, kind, before, after, record_id=None):
        if kind == ChangeKind.CREATED and after:
            return [self._intent(after, "driver", BOOKING_CREATED, "created")]

        if kind != ChangeKind.MODIFIED:
            return []

        new_status = status_transition(before, after)
        if new_status is None:
            return []

        if (
            new_status == BookingStatus.CANCELLED
            and after.get("cancellation_source") == CancellationSource.RIDE_CANCELLED
        ):
            # Passengers hear about cascaded cancellations from the ride itself
            return []

        return [
            self._intent(after, role, notice, new_status)
            for role, notice in BOOKING_TRANSITIONS.get(new_status, [])
        ]

    def _intent(self, booking: dict, role: str, notice: Notice, fact: str) -> NotificationIntent:
        if role == "other":
            cancelled_by_passenger = (
                booking.get("cancellation_source") == CancellationSource.PASSENGER
            )
            role = "driver" if cancelled_by_passenger else "passenger"

        recipient_id = booking[f"{role}_id"]
        data = {
            "booking_id": booking["id"],
            "ride_id": booking["ride_id"],
            "seats": booking.get("seats"),
            "total_amount": booking.get("total_amount"),
        }
        if notice.template == "booking_confirmed":
            data["verification_code"] = booking.get("verification_code")
        if notice.template == "booking_cancelled":
            data["reason"] = booking.get("cancellation_reason") or "No reason provided"
            data["cancelled_by"] = booking.get("cancellation_source")
        if notice.template == "rate_prompt":
            data["rate_target"] = booking["driver_id" if role == "passenger" else "passenger_id"]

        return NotificationIntent(
            recipient_id=recipient_id,
            template=notice.template,
            subject=notice.subject,
            priority=notice.priority,
            fact_key=f"booking:{booking['id']}:{fact}",
            data=data,
        )


class RideChangeProcessor(NotificationProcessor):
    source = "ride-service"

    async def intents(self, kind, before, after, record_id=None):
        if kind != ChangeKind.MODIFIED:
            return []

        new_status = status_transition(before, after)
        if new_status == RideStatus.CANCELLED:
            notice = RIDE_CANCELLED
            # Bookings the cascade already cancelled still need to hear about it
            condition = or_(
                Booking.status.in_(BookingStatus.ACTIVE),
                and_(
                    Booking.status == BookingStatus.CANCELLED,
                    Booking.cancellation_source == CancellationSource.RIDE_CANCELLED,
                ),
            )
        elif new_status == RideStatus.IN_PROGRESS:
            notice = RIDE_STARTED
            condition = Booking.status == BookingStatus.CONFIRMED
        else:
            return []

        async with self.session_factory() as db:
            result = await db.execute(
                select(Booking).where(Booking.ride_id == after["id"], condition).order_by(Booking.id)
            )
            bookings = list(result.scalars().all())

        return [
            NotificationIntent(
                recipient_id=booking.passenger_id,
                template=notice.template,
                subject=notice.subject,
                priority=notice.priority,
                fact_key=f"ride:{after['id']}:{new_status}",
                data={
                    "ride_id": after["id"],
                    "booking_id": booking.id,
                    "departure_at": after.get("departure_at"),
                    "reason": after.get("cancellation_reason"),
                },
            )
            for booking in bookings
        ]


class RatingChangeProcessor(NotificationProcessor):
    source = "rating-service"

    async def intents(self, kind, before, after, record_id=None):
        if kind != ChangeKind.CREATED or not after:
            return []

        rated_user_id = after["rated_user_id"]
        await self.recalculate_average(rated_user_id)

        return [
            NotificationIntent(
                recipient_id=rated_user_id,
                template=RATING_RECEIVED.template,
                subject=RATING_RECEIVED.subject,
                priority=RATING_RECEIVED.priority,
                fact_key=f"rating:{after['id']}:created",
                data={
                    "score": after["score"],
                    "rating_type": after.get("rating_type"),
                    "booking_id": after.get("booking_id"),
                },
            )
        ]

    async def recalculate_average(self, user_id: int) -> None:
        """Recompute from all ratings so a replayed record leaves the same result."""
        async with self.session_factory() as db:
            async with db.begin():
                row = (
                    await db.execute(
                        select(func.avg(Rating.score), func.count(Rating.id)).where(
                            Rating.rated_user_id == user_id
                        )
                    )
                ).one()
                average, count = row
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(
                        average_rating=round(float(average or 0), 2),
                        total_ratings=count,
                    )
                )
        logger.info("average_rating_recalculated", user_id=user_id, total_ratings=count)


class UserChangeProcessor(NotificationProcessor):
    source = "user-service"

    async def intents(self, kind, before, after, record_id=None):
        if kind != ChangeKind.MODIFIED or not before or not after:
            return []

        intents = []
        user_id = after["id"]

        if before.get("is_verified") is False and after.get("is_verified") is True:
            intents.append(
                NotificationIntent(
                    recipient_id=user_id,
                    email=after.get("email"),
                    template=USER_WELCOME.template,
                    subject=USER_WELCOME.subject,
                    fact_key=f"user:{user_id}:verified",
                    data={"first_name": after.get("first_name")},
                )
            )

        new_driver_status = after.get("driver_status")
        if before.get("driver_status") == DriverStatus.PENDING and new_driver_status in DRIVER_DECISIONS:
            notice = DRIVER_DECISIONS[new_driver_status]
            # A rejected driver may reapply, so each decision is its own fact
            decision = record_id if record_id is not None else after.get("updated_at")
            data = {"first_name": after.get("first_name")}
            if new_driver_status == DriverStatus.REJECTED:
                data["reason"] = after.get("driver_rejection_reason")
            intents.append(
                NotificationIntent(
                    recipient_id=user_id,
                    email=after.get("email"),
                    template=notice.template,
                    subject=notice.subject,
                    priority=notice.priority,
                    fact_key=f"user:{user_id}:driver_{new_driver_status}:{decision}",
                    data=data,
                )
            )

        return intents
