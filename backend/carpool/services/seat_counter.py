"""
Compare-and-swap writes on a ride's seat counters.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  Two passengers try to book the last seat simultaneously.
  Both read available_seats=1, both decrement to 0, both succeed.
  Result: Oversold ride.

Solution:
  Every write to a ride is a single conditional UPDATE guarded by the
  `version` column:

  1. Read the ride's current version
  2. UPDATE rides SET available_seats = available_seats - N,
                      booked_seats = booked_seats + N,
                      status = CASE WHEN available_seats - N = 0 THEN 'full' ELSE status END,
                      version = version + 1
     WHERE id = :ride_id AND version = :v AND available_seats >= N AND status = 'active'
  3. If rows_affected == 0, someone else modified the row -> re-read and retry

  The `full` flip happens in the same statement as the decrement, so the
  status and the counters can never disagree. Retries are bounded; when
  they run out the caller gets a Conflict rather than waiting.

  Different rides never contend: the guard is per row.

  The CHECK constraints on the rides table are the final safety net
  (available_seats >= 0, available_seats + booked_seats = total_seats).
"""

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.core.errors import BadRequestError, ConflictError, NotFoundError
from carpool.core.logging import get_logger
from carpool.core.metrics import seat_cas_retries
from carpool.models.ride import Ride, RideStatus
from carpool.notifications.change_events import ChangeKind
from carpool.services.change_feed import record_change

logger = get_logger(__name__)


async def load_ride(db: AsyncSession, ride_id: int, for_update: bool = False) -> Ride:
    """
    Read the ride's current committed state, replacing any stale identity-map copy.

    With ``for_update`` the ride's row lock is taken. Any path that writes both
    a ride and its bookings takes the ride lock first, so booking cancellation
    and ride cancellation never wait on each other in opposite orders.
    """
    query = select(Ride).where(Ride.id == ride_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    ride = result.scalar_one_or_none()
    if not ride:
        raise NotFoundError(f"Ride {ride_id} not found", code="RIDE_NOT_FOUND")
    return ride


async def compare_and_set(db: AsyncSession, ride: Ride, *conditions, **values) -> bool:
    """
    Write ``values`` to ``ride`` only if its version is unchanged since it was
    read (plus any extra ``conditions``). Bumps the version and refreshes the
    instance on success.
    """
    result = await db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.version == ride.version, *conditions)
        .values(version=Ride.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    await db.refresh(ride)
    return True


async def reserve_seats(db: AsyncSession, ride_id: int, seats: int, max_attempts: int = 3) -> Ride:
    """
    Move ``seats`` from available to booked on an active ride.
    Retries up to ``max_attempts`` on version conflicts.
    """
    for attempt in range(1, max_attempts + 1):
        ride = await load_ride(db, ride_id)

        if ride.status == RideStatus.FULL or (
            ride.status == RideStatus.ACTIVE and ride.available_seats < seats
        ):
            logger.warning(
                "seat_reservation_failed_no_seats",
                ride_id=ride_id,
                requested=seats,
                available=ride.available_seats,
            )
            raise ConflictError(
                f"Not enough seats. Requested: {seats}, Available: {ride.available_seats}",
                code="INSUFFICIENT_SEATS",
                details={"requested": seats, "available": ride.available_seats},
            )

        if ride.status != RideStatus.ACTIVE:
            raise BadRequestError(
                f"Ride is not open for booking (status: {ride.status})",
                code="RIDE_NOT_ACTIVE",
            )

        before = ride.snapshot()
        swapped = await compare_and_set(
            db,
            ride,
            Ride.available_seats >= seats,
            Ride.status == RideStatus.ACTIVE,
            available_seats=Ride.available_seats - seats,
            booked_seats=Ride.booked_seats + seats,
            status=case(
                (Ride.available_seats - seats == 0, RideStatus.FULL),
                else_=Ride.status,
            ),
        )
        if swapped:
            if attempt > 1:
                logger.info("seat_reservation_succeeded_after_retry", ride_id=ride_id, attempt=attempt)
            await record_change(db, ride, ChangeKind.MODIFIED, before)
            return ride

        # Version conflict - another transaction modified this ride
        seat_cas_retries.inc()
        logger.info(
            "seat_reservation_retry",
            ride_id=ride_id,
            attempt=attempt,
            reason="version_conflict",
        )

    raise ConflictError(
        "Booking failed due to high demand. Please try again.",
        code="SEAT_CONFLICT",
    )


async def release_seats(db: AsyncSession, ride_id: int, seats: int, max_attempts: int = 3) -> Ride:
    """
    Move ``seats`` from booked back to available. A full ride reopens as
    active. Cancelled rides keep their counters as they are.
    """
    for attempt in range(1, max_attempts + 1):
        ride = await load_ride(db, ride_id)
        if ride.status == RideStatus.CANCELLED:
            return ride

        before = ride.snapshot()
        swapped = await compare_and_set(
            db,
            ride,
            Ride.booked_seats >= seats,
            available_seats=Ride.available_seats + seats,
            booked_seats=Ride.booked_seats - seats,
            status=case(
                (Ride.status == RideStatus.FULL, RideStatus.ACTIVE),
                else_=Ride.status,
            ),
        )
        if swapped:
            await record_change(db, ride, ChangeKind.MODIFIED, before)
            return ride

        seat_cas_retries.inc()
        logger.info("seat_release_retry", ride_id=ride_id, attempt=attempt, reason="version_conflict")

    raise ConflictError(
        "Could not release seats due to concurrent updates. Please try again.",
        code="SEAT_CONFLICT",
    )
