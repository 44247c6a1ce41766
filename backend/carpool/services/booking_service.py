"""
Booking ledger: passenger reservations against a ride's seat inventory.

Seats are taken and returned only through ``seat_counter`` (compare-and-swap
on the ride's version, bounded retries), so concurrent bookings on the same
ride can never oversell it. Duplicate bookings are stopped twice: by an
application check and, for requests racing past it, by the partial unique
index on (ride_id, passenger_id).

Booking status machine:

    pending -> confirmed -> in_progress -> completed
       \\           \\            \\
        +-----------+------------+--> cancelled | no_show

Nothing leaves completed, cancelled or no_show.
"""

import secrets
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.clock import Clock, utcnow
from carpool.core.config import Settings
from carpool.core.errors import (
    AppError, BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError,
)
from carpool.core.logging import get_logger
from carpool.core.metrics import booking_latency, record_booking_attempt
from carpool.models.booking import Booking, BookingStatus, CancellationSource
from carpool.models.ride import Ride, RideStatus
from carpool.models.user import User
from carpool.notifications.change_events import ChangeKind
from carpool.schemas.booking import BookingCreate
from carpool.services.cache_service import CacheService
from carpool.services.change_feed import record_change
from carpool.services.seat_counter import load_ride, release_seats, reserve_seats

logger = get_logger(__name__)

# No 0/O or 1/I: codes are read aloud at the pickup point
VERIFICATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    BookingStatus.PENDING: (BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW),
    BookingStatus.CONFIRMED: (BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.NO_SHOW),
    BookingStatus.IN_PROGRESS: (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW),
}


def generate_verification_code(length: int = 6) -> str:
    return "".join(secrets.choice(VERIFICATION_ALPHABET) for _ in range(length))


class BookingLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.settings = settings
        self.clock = clock

    # ---- creation ----

    async def create_booking(self, passenger_id: int, data: BookingCreate) -> Booking:
        """
        Reserve seats on a ride for a passenger.

        The seat decrement is a single conditional UPDATE retried up to
        BOOKING_MAX_RETRY_ATTEMPTS times on version conflicts; losing every
        attempt surfaces as a 409.
        """
        start = time.perf_counter()
        try:
            booking = await self._create_booking(passenger_id, data)
        except ConflictError:
            record_booking_attempt("conflict")
            raise
        except AppError:
            record_booking_attempt("rejected")
            raise
        except Exception:
            record_booking_attempt("error")
            raise
        finally:
            booking_latency.observe(time.perf_counter() - start)

        record_booking_attempt("success")
        await self._invalidate(booking)
        return booking

    async def _create_booking(self, passenger_id: int, data: BookingCreate) -> Booking:
        now = self.clock()
        seats = data.seats

        async with self.session_factory() as db:
            async with db.begin():
                passenger = await db.get(User, passenger_id)
                if not passenger:
                    raise NotFoundError("Passenger not found", code="USER_NOT_FOUND")
                if not passenger.is_verified or not passenger.is_active:
                    raise ForbiddenError(
                        "Only verified, active users can book rides", code="USER_NOT_VERIFIED"
                    )

                ride = await load_ride(db, data.ride_id)
                if ride.driver_id == passenger_id:
                    raise BadRequestError("You cannot book your own ride", code="CANNOT_BOOK_OWN_RIDE")
                if ride.status == RideStatus.FULL:
                    raise ConflictError("Ride is fully booked", code="RIDE_FULL")
                if ride.status != RideStatus.ACTIVE:
                    raise BadRequestError(
                        f"Ride is not open for booking (status: {ride.status})",
                        code="RIDE_NOT_ACTIVE",
                    )
                if ride.departure_at < now + timedelta(minutes=self.settings.BOOKING_MIN_ADVANCE_MINUTES):
                    raise BadRequestError(
                        f"Booking must be made at least {self.settings.BOOKING_MIN_ADVANCE_MINUTES} "
                        "minutes before departure",
                        code="BOOKING_TOO_LATE",
                    )
                if not 1 <= seats <= self.settings.BOOKING_MAX_SEATS:
                    raise ValidationError(
                        f"Seats per booking must be between 1 and {self.settings.BOOKING_MAX_SEATS}",
                        code="INVALID_SEAT_COUNT",
                    )
                if data.pickup_point_id is not None and data.pickup_point_id not in {
                    p.id for p in ride.pickup_points
                }:
                    raise ValidationError(
                        "Pickup point does not belong to this ride", code="INVALID_PICKUP_POINT"
                    )

                existing = await db.execute(
                    select(Booking.id).where(
                        Booking.ride_id == ride.id,
                        Booking.passenger_id == passenger_id,
                        Booking.status != BookingStatus.CANCELLED,
                    )
                )
                existing_id = existing.scalar_one_or_none()
                if existing_id is not None:
                    raise ConflictError(
                        "You already have a booking for this ride",
                        code="BOOKING_EXISTS",
                        details={"existing_booking_id": existing_id},
                    )

                ride = await reserve_seats(
                    db, ride.id, seats, max_attempts=self.settings.BOOKING_MAX_RETRY_ATTEMPTS
                )

                auto_confirm = self.settings.BOOKING_AUTO_CONFIRM
                booking = Booking(
                    ride_id=ride.id,
                    passenger_id=passenger_id,
                    driver_id=ride.driver_id,
                    pickup_point_id=data.pickup_point_id,
                    seats=seats,
                    price_per_seat=ride.price_per_seat,
                    total_amount=ride.price_per_seat * seats,
                    status=BookingStatus.CONFIRMED if auto_confirm else BookingStatus.PENDING,
                    confirmed_at=now if auto_confirm else None,
                    verification_code=generate_verification_code(self.settings.VERIFICATION_CODE_LENGTH),
                    verification_expires_at=now + timedelta(hours=self.settings.VERIFICATION_CODE_TTL_HOURS),
                    is_late_cancellation=False,
                )
                db.add(booking)
                try:
                    await db.flush()
                except IntegrityError as e:
                    # Lost a race against a concurrent request by the same passenger
                    raise ConflictError(
                        "You already have a booking for this ride", code="BOOKING_EXISTS"
                    ) from e
                await record_change(db, booking, ChangeKind.CREATED)

        logger.info(
            "booking_created",
            booking_id=booking.id,
            passenger_id=passenger_id,
            ride_id=booking.ride_id,
            seats=seats,
            status=booking.status,
            ride_available_seats=ride.available_seats,
        )
        return booking

    # ---- cancellation ----

    async def cancel_booking(self, booking_id: int, actor_id: int, reason: str = "") -> Booking:
        """
        Cancel on behalf of the passenger or the driver and give the seats
        back to the ride.
        """
        now = self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                ride, booking = await self._lock_ride_and_booking(db, booking_id)
                is_passenger = booking.passenger_id == actor_id
                is_driver = booking.driver_id == actor_id
                if not is_passenger and not is_driver:
                    raise ForbiddenError(
                        "Not authorized to cancel this booking", code="FORBIDDEN"
                    )

                if booking.status in BookingStatus.ACTIVE:
                    if ride.departure_at <= now:
                        raise BadRequestError(
                            "Booking cannot be cancelled after departure",
                            code="BOOKING_CANNOT_CANCEL",
                        )
                elif not (booking.status == BookingStatus.IN_PROGRESS and is_driver):
                    raise BadRequestError(
                        f"Booking cannot be cancelled while {booking.status}",
                        code="BOOKING_CANNOT_CANCEL",
                    )

                is_late = ride.departure_at - now < timedelta(
                    minutes=self.settings.BOOKING_CANCELLATION_DEADLINE_MINUTES
                )
                await release_seats(
                    db, ride.id, booking.seats, max_attempts=self.settings.BOOKING_MAX_RETRY_ATTEMPTS
                )
                await self._transition(
                    db,
                    booking,
                    BookingStatus.CANCELLED,
                    cancelled_at=now,
                    cancelled_by=actor_id,
                    cancellation_reason=reason or None,
                    cancellation_source=(
                        CancellationSource.PASSENGER if is_passenger else CancellationSource.DRIVER
                    ),
                    is_late_cancellation=is_late,
                )

        logger.info(
            "booking_cancelled",
            booking_id=booking.id,
            actor_id=actor_id,
            ride_id=booking.ride_id,
            seats_released=booking.seats,
            source=booking.cancellation_source,
            is_late=booking.is_late_cancellation,
        )
        await self._invalidate(booking)
        return booking

    async def cascade_ride_cancellation(self, db: AsyncSession, ride: Ride) -> list[Booking]:
        """
        Cancel every pending/confirmed booking on a ride that is being
        cancelled, inside the caller's transaction. Seats stay booked: the
        ride itself is no longer bookable.
        """
        now = self.clock()
        result = await db.execute(
            select(Booking)
            .where(Booking.ride_id == ride.id, Booking.status.in_(BookingStatus.ACTIVE))
            .order_by(Booking.id)
            .with_for_update()
        )
        bookings = list(result.scalars().all())

        for booking in bookings:
            await self._transition(
                db,
                booking,
                BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=ride.driver_id,
                cancellation_reason=ride.cancellation_reason or "Ride cancelled by driver",
                cancellation_source=CancellationSource.RIDE_CANCELLED,
                is_late_cancellation=False,
            )

        if bookings:
            logger.info(
                "ride_bookings_cascaded",
                ride_id=ride.id,
                bookings=[b.id for b in bookings],
            )
        return bookings

    # ---- status machine ----

    async def confirm_booking(self, booking_id: int, driver_id: int) -> Booking:
        async with self.session_factory() as db:
            async with db.begin():
                booking = await self._load_for_driver(db, booking_id, driver_id)
                await self._transition(
                    db, booking, BookingStatus.CONFIRMED, confirmed_at=self.clock()
                )

        logger.info("booking_confirmed", booking_id=booking.id, driver_id=driver_id)
        await self._invalidate(booking)
        return booking

    async def start_booking(self, booking_id: int, driver_id: int, verification_code: str) -> Booking:
        """Passenger boards: the driver checks the passenger's verification code."""
        now = self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                booking = await self._load_for_driver(db, booking_id, driver_id)
                self._ensure_transition(booking, BookingStatus.IN_PROGRESS)
                if (
                    booking.verification_expires_at <= now
                    or booking.verification_code.upper() != verification_code.strip().upper()
                ):
                    raise BadRequestError(
                        "Invalid or expired verification code",
                        code="INVALID_VERIFICATION_CODE",
                    )
                await self._transition(db, booking, BookingStatus.IN_PROGRESS, started_at=now)

        logger.info("booking_started", booking_id=booking.id, driver_id=driver_id)
        await self._invalidate(booking)
        return booking

    async def complete_booking(self, booking_id: int, driver_id: int) -> Booking:
        async with self.session_factory() as db:
            async with db.begin():
                booking = await self._load_for_driver(db, booking_id, driver_id)
                await self._transition(
                    db, booking, BookingStatus.COMPLETED, completed_at=self.clock()
                )

        logger.info("booking_completed", booking_id=booking.id, driver_id=driver_id)
        await self._invalidate(booking)
        return booking

    async def mark_no_show(self, booking_id: int, driver_id: int) -> Booking:
        """Allowed once the grace period after departure has passed; frees the seats."""
        now = self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                ride, booking = await self._lock_ride_and_booking(db, booking_id)
                if booking.driver_id != driver_id:
                    raise ForbiddenError("Only the ride's driver can do this", code="NOT_RIDE_OWNER")
                self._ensure_transition(booking, BookingStatus.NO_SHOW)

                grace = timedelta(minutes=self.settings.BOOKING_NO_SHOW_GRACE_MINUTES)
                if now < ride.departure_at + grace:
                    raise BadRequestError(
                        f"Please wait until {self.settings.BOOKING_NO_SHOW_GRACE_MINUTES} "
                        "minutes after departure time",
                        code="NO_SHOW_TOO_EARLY",
                    )

                await release_seats(
                    db, ride.id, booking.seats, max_attempts=self.settings.BOOKING_MAX_RETRY_ATTEMPTS
                )
                await self._transition(db, booking, BookingStatus.NO_SHOW, no_show_at=now)

        logger.info("booking_no_show", booking_id=booking.id, driver_id=driver_id)
        await self._invalidate(booking)
        return booking

    async def regenerate_verification_code(self, booking_id: int, passenger_id: int) -> Booking:
        now = self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                booking = await self._load_booking(db, booking_id)
                if booking.passenger_id != passenger_id:
                    raise ForbiddenError(
                        "Not authorized to view verification code", code="FORBIDDEN"
                    )
                if booking.status not in BookingStatus.ACTIVE:
                    raise BadRequestError(
                        "Verification code not available for this booking status",
                        code="BOOKING_INVALID_STATUS",
                    )

                before = booking.snapshot()
                booking.verification_code = generate_verification_code(
                    self.settings.VERIFICATION_CODE_LENGTH
                )
                booking.verification_expires_at = now + timedelta(
                    hours=self.settings.VERIFICATION_CODE_TTL_HOURS
                )
                await record_change(db, booking, ChangeKind.MODIFIED, before)

        logger.info("verification_code_regenerated", booking_id=booking.id)
        return booking

    # ---- reads ----

    async def get_booking(self, booking_id: int, user_id: int) -> Booking:
        async with self.session_factory() as db:
            booking = await self._load_booking(db, booking_id, lock=False)
        if user_id not in (booking.passenger_id, booking.driver_id):
            raise ForbiddenError("Not authorized to view this booking", code="FORBIDDEN")
        return booking

    async def list_passenger_bookings(
        self, passenger_id: int, status: Optional[str] = None
    ) -> list[Booking]:
        async with self.session_factory() as db:
            query = select(Booking).where(Booking.passenger_id == passenger_id)
            if status:
                query = query.where(Booking.status == status)
            result = await db.execute(query.order_by(Booking.created_at.desc(), Booking.id.desc()))
            return list(result.scalars().all())

    async def list_ride_bookings(self, ride_id: int, driver_id: int) -> list[Booking]:
        async with self.session_factory() as db:
            ride = await load_ride(db, ride_id)
            if ride.driver_id != driver_id:
                raise ForbiddenError("Only the ride's driver can list its bookings", code="NOT_RIDE_OWNER")
            result = await db.execute(
                select(Booking).where(Booking.ride_id == ride_id).order_by(Booking.id)
            )
            return list(result.scalars().all())

    # ---- helpers ----

    async def _load_booking(self, db: AsyncSession, booking_id: int, lock: bool = True) -> Booking:
        query = select(Booking).where(Booking.id == booking_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    async def _lock_ride_and_booking(self, db: AsyncSession, booking_id: int) -> tuple[Ride, Booking]:
        """Lock the booking's ride, then the booking: the same order ride cancellation uses."""
        booking = await self._load_booking(db, booking_id, lock=False)
        ride = await load_ride(db, booking.ride_id, for_update=True)
        return ride, await self._load_booking(db, booking_id)

    async def _load_for_driver(self, db: AsyncSession, booking_id: int, driver_id: int) -> Booking:
        booking = await self._load_booking(db, booking_id)
        if booking.driver_id != driver_id:
            raise ForbiddenError("Only the ride's driver can do this", code="NOT_RIDE_OWNER")
        return booking

    @staticmethod
    def _ensure_transition(booking: Booking, new_status: str) -> None:
        if new_status not in ALLOWED_TRANSITIONS.get(booking.status, ()):
            raise BadRequestError(
                f"Cannot move booking from {booking.status} to {new_status}",
                code="BOOKING_INVALID_STATUS",
            )

    async def _transition(self, db: AsyncSession, booking: Booking, new_status: str, **fields) -> None:
        self._ensure_transition(booking, new_status)
        before = booking.snapshot()
        booking.status = new_status
        for name, value in fields.items():
            setattr(booking, name, value)
        await record_change(db, booking, ChangeKind.MODIFIED, before)

    async def _invalidate(self, booking: Booking) -> None:
        await self.cache.invalidate_entity(
            "booking",
            booking_id=booking.id,
            passenger_id=booking.passenger_id,
            driver_id=booking.driver_id,
            ride_id=booking.ride_id,
        )
