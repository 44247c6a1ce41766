"""
Ride offers and their seat inventory.

The SeatInventoryManager owns every write to a ride: creation (including
recurring expansion), edits, lifecycle transitions and pickup points. Seat
counters themselves only move through ``seat_counter`` so that
available + booked == total holds on every path.

Each operation runs in one transaction that also appends the ride's change
record; cache keys are invalidated only after that transaction commits.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.clock import Clock, utcnow
from carpool.core.config import Settings
from carpool.core.errors import (
    BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError,
)
from carpool.core.logging import get_logger
from carpool.models.booking import Booking, BookingStatus
from carpool.models.ride import PickupPoint, Ride, RideStatus
from carpool.models.user import DriverStatus, User
from carpool.models.vehicle import Vehicle, VehicleStatus
from carpool.notifications.change_events import ChangeKind
from carpool.schemas.ride import WEEKDAYS, PickupPointCreate, RideCreate, RideSearch, RideUpdate
from carpool.services.booking_service import BookingLedger
from carpool.services.cache_service import CacheService
from carpool.services.change_feed import record_change
from carpool.services.seat_counter import compare_and_set, load_ride

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0
MINUTES_PER_KM = 3
PICKUP_OFFSET_STEP_MINUTES = 5


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass
class RideMatch:
    ride: Ride
    driver_first_name: str
    driver_rating: float
    origin_distance_km: Optional[float] = None
    destination_distance_km: Optional[float] = None


# Rating and seats rank best-first before sort_order is applied
SEARCH_SORT_KEYS = {
    "departure_at": lambda m: m.ride.departure_at,
    "price": lambda m: m.ride.price_per_seat,
    "rating": lambda m: -m.driver_rating,
    "seats": lambda m: -m.ride.available_seats,
}


def recurring_dates(start: date, weekdays: set[str], end: date, limit: int) -> list[date]:
    """
    Dates after ``start`` and before ``end`` falling on one of ``weekdays``,
    at most ``limit`` of them.
    """
    dates = []
    current = start + timedelta(days=1)
    while current < end and len(dates) < limit:
        if WEEKDAYS[current.weekday()] in weekdays:
            dates.append(current)
        current += timedelta(days=1)
    return dates


class SeatInventoryManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: BookingLedger,
        cache: CacheService,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.cache = cache
        self.settings = settings
        self.clock = clock

    # ---- creation ----

    async def create_ride(self, owner_id: int, data: RideCreate) -> tuple[Ride, list[Ride]]:
        """
        Create a ride offer, plus its recurring instances when requested.
        Parent and instances commit together or not at all.
        """
        departure_at = as_utc(data.departure_at)

        async with self.session_factory() as db:
            async with db.begin():
                owner = await self._get_driver(db, owner_id)
                vehicle = await self._resolve_vehicle(db, owner, data.vehicle_id, data.seats)
                self._validate_departure(departure_at)
                self._validate_price(data.price_per_seat)
                await self._check_overlap(db, owner_id, departure_at)

                ride = self._build_ride(owner_id, vehicle.id, data, departure_at)
                db.add(ride)
                await db.flush()

                instances = []
                if data.is_recurring and data.recurring_days:
                    instances = await self._expand_recurring(db, ride, data)

                await record_change(db, ride, ChangeKind.CREATED)
                for instance in instances:
                    await record_change(db, instance, ChangeKind.CREATED)

        logger.info(
            "ride_created",
            ride_id=ride.id,
            driver_id=owner_id,
            seats=ride.total_seats,
            departure_at=ride.departure_at.isoformat(),
            recurring_instances=len(instances),
        )
        await self._invalidate(ride)
        return ride, instances

    def _build_ride(
        self,
        owner_id: int,
        vehicle_id: int,
        data: RideCreate,
        departure_at: datetime,
    ) -> Ride:
        distance = haversine_km(
            data.origin.lat, data.origin.lng, data.destination.lat, data.destination.lng
        )
        ride = Ride(
            driver_id=owner_id,
            vehicle_id=vehicle_id,
            departure_at=departure_at,
            origin_address=data.origin.address,
            origin_name=data.origin.name or data.origin.address,
            origin_lat=data.origin.lat,
            origin_lng=data.origin.lng,
            destination_address=data.destination.address,
            destination_name=data.destination.name or data.destination.address,
            destination_lat=data.destination.lat,
            destination_lng=data.destination.lng,
            estimated_distance_km=round(distance, 1),
            estimated_duration_minutes=round(distance * MINUTES_PER_KM),
            total_seats=data.seats,
            available_seats=data.seats,
            booked_seats=0,
            price_per_seat=data.price_per_seat,
            wait_time_minutes=(
                data.wait_time_minutes
                if data.wait_time_minutes is not None
                else self.settings.RIDE_DEFAULT_WAIT_MINUTES
            ),
            notes=data.notes,
            status=RideStatus.ACTIVE,
            is_recurring=bool(data.is_recurring and data.recurring_days),
            version=1,
        )
        ride.pickup_points = [
            PickupPoint(
                name=point.name,
                address=point.address,
                lat=point.lat,
                lng=point.lng,
                estimated_offset_minutes=(
                    point.estimated_offset_minutes
                    if point.estimated_offset_minutes is not None
                    else position * PICKUP_OFFSET_STEP_MINUTES
                ),
                order=position,
            )
            for position, point in enumerate(data.pickup_points, start=1)
        ]
        if len(ride.pickup_points) > self.settings.RIDE_MAX_PICKUP_POINTS:
            raise ValidationError(
                f"Maximum {self.settings.RIDE_MAX_PICKUP_POINTS} pickup points allowed",
                code="TOO_MANY_PICKUP_POINTS",
            )
        return ride

    async def _expand_recurring(self, db: AsyncSession, parent: Ride, data: RideCreate) -> list[Ride]:
        parent_date = parent.departure_at.date()
        end_date = data.recurring_end_date or (
            parent_date + timedelta(weeks=self.settings.RECURRING_DEFAULT_WEEKS)
        )
        days = recurring_dates(
            parent_date,
            set(data.recurring_days),
            end_date,
            self.settings.RECURRING_MAX_INSTANCES,
        )

        instances = []
        for day in days:
            instance = self._build_ride(
                parent.driver_id,
                parent.vehicle_id,
                data,
                datetime.combine(day, parent.departure_at.timetz()),
            )
            instance.is_recurring = False
            instance.is_recurring_instance = True
            instance.parent_ride_id = parent.id
            instances.append(instance)

        db.add_all(instances)
        parent.recurring_days = list(data.recurring_days)
        parent.recurring_end_date = end_date
        parent.recurring_instance_count = len(instances)
        await db.flush()

        logger.info(
            "recurring_rides_expanded",
            parent_ride_id=parent.id,
            days=list(data.recurring_days),
            end_date=end_date.isoformat(),
            instances=len(instances),
        )
        return instances

    # ---- edits ----

    async def update_ride(self, ride_id: int, owner_id: int, patch: RideUpdate) -> Ride:
        """Only departure time, price, wait time, seat count and notes may change."""
        async with self.session_factory() as db:
            async with db.begin():
                ride = await load_ride(db, ride_id)
                self._ensure_owner(ride, owner_id)
                if ride.status not in RideStatus.BOOKABLE or ride.departure_at <= self.clock():
                    raise BadRequestError(
                        "Only upcoming active rides can be updated",
                        code="RIDE_NOT_EDITABLE",
                    )

                values = {}
                if patch.departure_at is not None:
                    departure_at = as_utc(patch.departure_at)
                    self._validate_departure(departure_at)
                    await self._check_overlap(db, owner_id, departure_at, exclude_ride_id=ride.id)
                    values["departure_at"] = departure_at
                if patch.price_per_seat is not None:
                    self._validate_price(patch.price_per_seat)
                    values["price_per_seat"] = patch.price_per_seat
                if patch.wait_time_minutes is not None:
                    values["wait_time_minutes"] = patch.wait_time_minutes
                if patch.notes is not None:
                    values["notes"] = patch.notes
                if patch.seats is not None and patch.seats != ride.total_seats:
                    if patch.seats < ride.booked_seats:
                        raise BadRequestError(
                            f"Cannot reduce seats below the {ride.booked_seats} already booked",
                            code="SEATS_BELOW_BOOKED",
                        )
                    vehicle = await db.get(Vehicle, ride.vehicle_id)
                    if vehicle and patch.seats > vehicle.capacity:
                        raise ValidationError(
                            f"Maximum seats for this vehicle is {vehicle.capacity}",
                            code="SEATS_EXCEED_CAPACITY",
                        )
                    available = patch.seats - ride.booked_seats
                    values["total_seats"] = patch.seats
                    values["available_seats"] = available
                    values["status"] = RideStatus.FULL if available == 0 else RideStatus.ACTIVE

                if not values:
                    return ride

                before = ride.snapshot()
                if not await compare_and_set(db, ride, **values):
                    raise ConflictError(
                        "Ride was modified concurrently. Please retry.",
                        code="RIDE_VERSION_CONFLICT",
                    )
                await record_change(db, ride, ChangeKind.MODIFIED, before)

        logger.info("ride_updated", ride_id=ride.id, fields=sorted(values))
        await self._invalidate(ride)
        return ride

    # ---- cancellation ----

    async def cancel_ride(self, ride_id: int, owner_id: int, reason: str = "") -> tuple[Ride, list[Booking]]:
        """Cancel a ride and, in the same transaction, every booking still on it."""
        async with self.session_factory() as db:
            async with db.begin():
                ride = await load_ride(db, ride_id, for_update=True)
                self._ensure_owner(ride, owner_id)
                affected = await self._cancel_in_session(db, ride, reason)

        logger.info(
            "ride_cancelled",
            ride_id=ride.id,
            driver_id=owner_id,
            affected_bookings=len(affected),
        )
        await self._invalidate(ride)
        for booking in affected:
            await self.cache.invalidate_entity(
                "booking",
                booking_id=booking.id,
                passenger_id=booking.passenger_id,
                driver_id=booking.driver_id,
            )
        return ride, affected

    async def _cancel_in_session(self, db: AsyncSession, ride: Ride, reason: str) -> list[Booking]:
        if ride.status in (RideStatus.CANCELLED, RideStatus.COMPLETED, RideStatus.IN_PROGRESS):
            raise BadRequestError(
                f"Cannot cancel a ride that is {ride.status}",
                code="RIDE_NOT_CANCELLABLE",
            )

        before = ride.snapshot()
        swapped = await compare_and_set(
            db,
            ride,
            status=RideStatus.CANCELLED,
            cancelled_at=self.clock(),
            cancellation_reason=reason or None,
        )
        if not swapped:
            raise ConflictError(
                "Ride was modified concurrently. Please retry.",
                code="RIDE_VERSION_CONFLICT",
            )
        await record_change(db, ride, ChangeKind.MODIFIED, before)
        return await self.ledger.cascade_ride_cancellation(db, ride)

    async def cancel_recurring_series(
        self, parent_id: int, owner_id: int, reason: str = ""
    ) -> tuple[list[int], list[Booking]]:
        """
        Cancel the parent and every instance that is still open and has not
        departed. Returns the cancelled ride ids and all affected bookings.
        """
        now = self.clock()
        cancelled_ids: list[int] = []
        affected: list[Booking] = []

        async with self.session_factory() as db:
            async with db.begin():
                parent = await load_ride(db, parent_id, for_update=True)
                self._ensure_owner(parent, owner_id)
                if not parent.is_recurring:
                    raise BadRequestError("Ride is not a recurring series", code="RIDE_NOT_RECURRING")

                result = await db.execute(
                    select(Ride)
                    .where(Ride.parent_ride_id == parent_id)
                    .order_by(Ride.departure_at)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                series = [parent, *result.scalars().all()]

                for ride in series:
                    if ride.status not in RideStatus.BOOKABLE or ride.departure_at <= now:
                        continue
                    affected.extend(await self._cancel_in_session(db, ride, reason))
                    cancelled_ids.append(ride.id)

        logger.info(
            "recurring_series_cancelled",
            parent_ride_id=parent_id,
            cancelled_rides=len(cancelled_ids),
            affected_bookings=len(affected),
        )
        await self.cache.invalidate_entity("ride", driver_id=owner_id, parent_ride_id=parent_id)
        for ride_id in cancelled_ids:
            await self.cache.invalidate_entity("ride", ride_id=ride_id)
        for booking in affected:
            await self.cache.invalidate_entity(
                "booking", booking_id=booking.id, passenger_id=booking.passenger_id
            )
        return cancelled_ids, affected

    # ---- lifecycle ----

    async def start_ride(self, ride_id: int, owner_id: int) -> Ride:
        async with self.session_factory() as db:
            async with db.begin():
                ride = await load_ride(db, ride_id)
                self._ensure_owner(ride, owner_id)
                if ride.status not in RideStatus.BOOKABLE:
                    raise BadRequestError(
                        f"Cannot start a ride that is {ride.status}",
                        code="RIDE_INVALID_STATUS",
                    )
                await self._transition(
                    db, ride, status=RideStatus.IN_PROGRESS, started_at=self.clock()
                )

        logger.info("ride_started", ride_id=ride.id, driver_id=owner_id)
        await self._invalidate(ride)
        return ride

    async def complete_ride(self, ride_id: int, owner_id: int) -> Ride:
        async with self.session_factory() as db:
            async with db.begin():
                ride = await load_ride(db, ride_id)
                self._ensure_owner(ride, owner_id)
                if ride.status != RideStatus.IN_PROGRESS:
                    raise BadRequestError(
                        "Only a ride in progress can be completed",
                        code="RIDE_INVALID_STATUS",
                    )
                now = self.clock()
                started_at = ride.started_at or now
                await self._transition(
                    db,
                    ride,
                    status=RideStatus.COMPLETED,
                    completed_at=now,
                    actual_duration_minutes=round((now - started_at).total_seconds() / 60),
                )

        logger.info(
            "ride_completed",
            ride_id=ride.id,
            driver_id=owner_id,
            duration_minutes=ride.actual_duration_minutes,
        )
        await self._invalidate(ride)
        return ride

    async def _transition(self, db: AsyncSession, ride: Ride, **values) -> None:
        before = ride.snapshot()
        if not await compare_and_set(db, ride, **values):
            raise ConflictError(
                "Ride was modified concurrently. Please retry.",
                code="RIDE_VERSION_CONFLICT",
            )
        await record_change(db, ride, ChangeKind.MODIFIED, before)

    # ---- pickup points ----

    async def add_pickup_point(self, ride_id: int, owner_id: int, data: PickupPointCreate) -> Ride:
        async with self.session_factory() as db:
            async with db.begin():
                ride = await self._editable_ride(db, ride_id, owner_id)
                if len(ride.pickup_points) >= self.settings.RIDE_MAX_PICKUP_POINTS:
                    raise BadRequestError(
                        f"Maximum {self.settings.RIDE_MAX_PICKUP_POINTS} pickup points allowed",
                        code="TOO_MANY_PICKUP_POINTS",
                    )
                order = len(ride.pickup_points) + 1
                ride.pickup_points.append(
                    PickupPoint(
                        name=data.name,
                        address=data.address,
                        lat=data.lat,
                        lng=data.lng,
                        estimated_offset_minutes=(
                            data.estimated_offset_minutes
                            if data.estimated_offset_minutes is not None
                            else order * PICKUP_OFFSET_STEP_MINUTES
                        ),
                        order=order,
                    )
                )
                await db.flush()

        logger.info("pickup_point_added", ride_id=ride_id, order=order)
        await self._invalidate(ride)
        return ride

    async def remove_pickup_point(self, ride_id: int, owner_id: int, pickup_point_id: int) -> Ride:
        async with self.session_factory() as db:
            async with db.begin():
                ride = await self._editable_ride(db, ride_id, owner_id)
                point = next((p for p in ride.pickup_points if p.id == pickup_point_id), None)
                if point is None:
                    raise NotFoundError("Pickup point not found", code="PICKUP_POINT_NOT_FOUND")

                in_use = await db.execute(
                    select(Booking.id).where(
                        Booking.pickup_point_id == pickup_point_id,
                        Booking.status.in_(BookingStatus.ACTIVE),
                    ).limit(1)
                )
                if in_use.first() is not None:
                    raise BadRequestError(
                        "Pickup point is used by an active booking",
                        code="PICKUP_POINT_IN_USE",
                    )

                ride.pickup_points.remove(point)
                for position, remaining in enumerate(ride.pickup_points, start=1):
                    remaining.order = position
                await db.flush()

        logger.info("pickup_point_removed", ride_id=ride_id, pickup_point_id=pickup_point_id)
        await self._invalidate(ride)
        return ride

    async def reorder_pickup_points(self, ride_id: int, owner_id: int, pickup_point_ids: list[int]) -> Ride:
        async with self.session_factory() as db:
            async with db.begin():
                ride = await self._editable_ride(db, ride_id, owner_id)
                points = {p.id: p for p in ride.pickup_points}
                if len(pickup_point_ids) != len(points) or set(pickup_point_ids) != set(points):
                    raise ValidationError(
                        "Ordering must list every pickup point of the ride exactly once",
                        code="INVALID_PICKUP_ORDER",
                        details={"expected": sorted(points)},
                    )
                for position, point_id in enumerate(pickup_point_ids, start=1):
                    points[point_id].order = position
                await db.flush()
                await db.refresh(ride, ["pickup_points"])

        logger.info("pickup_points_reordered", ride_id=ride_id, order=pickup_point_ids)
        await self._invalidate(ride)
        return ride

    async def _editable_ride(self, db: AsyncSession, ride_id: int, owner_id: int) -> Ride:
        ride = await load_ride(db, ride_id)
        self._ensure_owner(ride, owner_id)
        if ride.status not in RideStatus.BOOKABLE:
            raise BadRequestError(
                f"Pickup points cannot change on a ride that is {ride.status}",
                code="RIDE_NOT_EDITABLE",
            )
        return ride

    # ---- reads ----

    async def get_ride(self, ride_id: int) -> Ride:
        async with self.session_factory() as db:
            return await load_ride(db, ride_id)

    async def list_driver_rides(
        self, driver_id: int, status: Optional[str] = None, limit: int = 50
    ) -> list[Ride]:
        async with self.session_factory() as db:
            query = select(Ride).where(Ride.driver_id == driver_id)
            if status:
                query = query.where(Ride.status == status)
            result = await db.execute(query.order_by(Ride.departure_at.desc()).limit(limit))
            return list(result.scalars().all())

    async def list_recurring_instances(self, parent_id: int) -> list[Ride]:
        async with self.session_factory() as db:
            await load_ride(db, parent_id)
            result = await db.execute(
                select(Ride).where(Ride.parent_ride_id == parent_id).order_by(Ride.departure_at)
            )
            return list(result.scalars().all())

    # ---- discovery ----

    async def search_rides(self, criteria: RideSearch) -> tuple[list[RideMatch], int]:
        """
        Rides a passenger could still book, filtered by ``criteria``.

        Status, seats, date, price and driver rating are filtered in SQL;
        origin and destination proximity are great-circle distances checked
        against ``radius_km`` (RIDE_SEARCH_RADIUS_KM by default). Returns one
        page of matches and the total match count.
        """
        cutoff = self.clock() + timedelta(minutes=self.settings.BOOKING_MIN_ADVANCE_MINUTES)
        radius = criteria.radius_km or self.settings.RIDE_SEARCH_RADIUS_KM

        query = (
            select(Ride, User.first_name, User.average_rating)
            .join(User, User.id == Ride.driver_id)
            .where(
                Ride.status == RideStatus.ACTIVE,
                Ride.departure_at > cutoff,
                Ride.available_seats >= criteria.seats,
            )
            .order_by(Ride.departure_at, Ride.id)
        )
        if criteria.departure_date:
            day_start = datetime.combine(criteria.departure_date, time.min, tzinfo=timezone.utc)
            query = query.where(
                Ride.departure_at >= day_start, Ride.departure_at < day_start + timedelta(days=1)
            )
        if criteria.max_price is not None:
            query = query.where(Ride.price_per_seat <= criteria.max_price)
        if criteria.min_rating is not None:
            query = query.where(User.average_rating >= criteria.min_rating)

        async with self.session_factory() as db:
            rows = (await db.execute(query)).all()

        matches = []
        for ride, first_name, rating in rows:
            match = RideMatch(ride=ride, driver_first_name=first_name, driver_rating=rating or 0.0)
            if criteria.from_lat is not None and criteria.from_lng is not None:
                distance = haversine_km(
                    criteria.from_lat, criteria.from_lng, ride.origin_lat, ride.origin_lng
                )
                if distance > radius:
                    continue
                match.origin_distance_km = round(distance, 2)
            if criteria.to_lat is not None and criteria.to_lng is not None:
                distance = haversine_km(
                    criteria.to_lat, criteria.to_lng, ride.destination_lat, ride.destination_lng
                )
                if distance > radius:
                    continue
                match.destination_distance_km = round(distance, 2)
            matches.append(match)

        matches.sort(key=SEARCH_SORT_KEYS[criteria.sort_by], reverse=criteria.sort_order == "desc")

        start = (criteria.page - 1) * criteria.limit
        page = matches[start:start + criteria.limit]
        logger.info(
            "rides_searched",
            seats=criteria.seats,
            departure_date=criteria.departure_date,
            radius_km=radius,
            total=len(matches),
            returned=len(page),
        )
        return page, len(matches)

    async def list_available_rides(
        self, departure_date: Optional[date] = None, page: int = 1, limit: int = 20
    ) -> tuple[list[RideMatch], int]:
        """General listing: every bookable ride, soonest first."""
        return await self.search_rides(
            RideSearch(departure_date=departure_date, page=page, limit=limit)
        )

    async def list_ride_passengers(self, ride_id: int, owner_id: int) -> list[tuple[Booking, User]]:
        """Confirmed passengers on a ride with their contact details. Driver only."""
        async with self.session_factory() as db:
            ride = await load_ride(db, ride_id)
            self._ensure_owner(ride, owner_id)
            result = await db.execute(
                select(Booking, User)
                .join(User, User.id == Booking.passenger_id)
                .where(Booking.ride_id == ride_id, Booking.status == BookingStatus.CONFIRMED)
                .order_by(Booking.id)
            )
            return [(booking, user) for booking, user in result.all()]

    # ---- validation helpers ----

    async def _get_driver(self, db: AsyncSession, owner_id: int) -> User:
        owner = await db.get(User, owner_id)
        if not owner:
            raise NotFoundError("Driver not found", code="USER_NOT_FOUND")
        if not owner.is_driver:
            raise ForbiddenError("User is not registered as a driver", code="USER_NOT_DRIVER")
        if owner.driver_status != DriverStatus.VERIFIED:
            raise ForbiddenError(
                "Driver verification is pending or rejected", code="DRIVER_NOT_VERIFIED"
            )
        if not owner.is_verified:
            raise ForbiddenError("Email must be verified to create rides", code="USER_NOT_VERIFIED")
        return owner

    async def _resolve_vehicle(
        self, db: AsyncSession, owner: User, vehicle_id: Optional[int], seats: int
    ) -> Vehicle:
        if vehicle_id is not None:
            vehicle = await db.get(Vehicle, vehicle_id)
            if not vehicle:
                raise NotFoundError("Vehicle not found", code="VEHICLE_NOT_FOUND")
            if vehicle.owner_id != owner.id:
                raise ForbiddenError("Vehicle does not belong to driver", code="FORBIDDEN")
        else:
            vehicles = owner.vehicles
            vehicle = next((v for v in vehicles if v.is_primary), vehicles[0] if vehicles else None)
            if not vehicle:
                raise BadRequestError(
                    "No vehicle found. Please add a vehicle first.",
                    code="VEHICLE_NOT_FOUND",
                )

        if vehicle.verification_status != VehicleStatus.APPROVED:
            raise ForbiddenError(
                "Vehicle verification is pending or rejected", code="VEHICLE_NOT_VERIFIED"
            )
        if seats > vehicle.capacity:
            raise ValidationError(
                f"Maximum seats for this vehicle is {vehicle.capacity}",
                code="SEATS_EXCEED_CAPACITY",
                details={"capacity": vehicle.capacity, "requested": seats},
            )
        return vehicle

    def _validate_departure(self, departure_at: datetime) -> None:
        now = self.clock()
        if departure_at < now + timedelta(minutes=self.settings.RIDE_MIN_ADVANCE_MINUTES):
            raise ValidationError(
                f"Departure must be at least {self.settings.RIDE_MIN_ADVANCE_MINUTES} minutes from now",
                code="DEPARTURE_TOO_SOON",
            )
        if departure_at > now + timedelta(days=self.settings.RIDE_MAX_ADVANCE_DAYS):
            raise ValidationError(
                f"Departure must be within {self.settings.RIDE_MAX_ADVANCE_DAYS} days",
                code="DEPARTURE_TOO_FAR",
            )

    def _validate_price(self, price: int) -> None:
        if not self.settings.RIDE_MIN_PRICE <= price <= self.settings.RIDE_MAX_PRICE:
            raise ValidationError(
                f"Price must be between {self.settings.RIDE_MIN_PRICE} "
                f"and {self.settings.RIDE_MAX_PRICE}",
                code="INVALID_PRICE",
            )

    async def _check_overlap(
        self,
        db: AsyncSession,
        driver_id: int,
        departure_at: datetime,
        exclude_ride_id: Optional[int] = None,
    ) -> None:
        window = timedelta(minutes=self.settings.RIDE_OVERLAP_MINUTES)
        query = select(Ride.id).where(
            Ride.driver_id == driver_id,
            Ride.status.not_in(RideStatus.TERMINAL),
            Ride.departure_at > departure_at - window,
            Ride.departure_at < departure_at + window,
        )
        if exclude_ride_id is not None:
            query = query.where(Ride.id != exclude_ride_id)

        conflicting = (await db.execute(query.limit(1))).scalar_one_or_none()
        if conflicting is not None:
            raise ConflictError(
                "You already have a ride scheduled around this time",
                code="RIDE_TIME_CONFLICT",
                details={"conflicting_ride_id": conflicting},
            )

    @staticmethod
    def _ensure_owner(ride: Ride, owner_id: int) -> None:
        if ride.driver_id != owner_id:
            raise ForbiddenError("Only the ride's driver can do this", code="NOT_RIDE_OWNER")

    async def _invalidate(self, ride: Ride) -> None:
        await self.cache.invalidate_entity(
            "ride",
            ride_id=ride.id,
            driver_id=ride.driver_id,
            parent_ride_id=ride.parent_ride_id,
        )
