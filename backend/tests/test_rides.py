"""
Tests for ride offers: validation, recurring expansion, lifecycle,
cancellation cascade and pickup points.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from carpool.core.errors import BadRequestError, ConflictError, ForbiddenError, ValidationError
from carpool.models.booking import BookingStatus, CancellationSource
from carpool.models.change_record import ChangeRecord
from carpool.models.ride import RideStatus
from carpool.models.user import DriverStatus
from carpool.schemas.booking import BookingCreate
from carpool.schemas.ride import PickupPointCreate, RideSearch, RideUpdate
from carpool.services.ride_service import haversine_km, recurring_dates

from conftest import DEPARTURE, FIXED_NOW, add_user, add_vehicle, ride_create


def test_recurring_dates_skip_start_day_and_stop_before_end():
    dates = recurring_dates(date(2026, 10, 19), {"monday", "wednesday"}, date(2026, 11, 2), limit=50)
    assert dates == [date(2026, 10, 21), date(2026, 10, 26), date(2026, 10, 28)]


def test_recurring_dates_respect_limit():
    dates = recurring_dates(date(2026, 10, 19), {"monday", "tuesday", "wednesday"}, date(2027, 1, 1), limit=4)
    assert len(dates) == 4


def test_haversine_distance():
    assert haversine_km(0, 0, 0, 0) == 0
    # One degree of latitude is roughly 111 km
    assert 110 < haversine_km(0, 0, 1, 0) < 112


@pytest.mark.asyncio
async def test_create_ride(container, driver):
    """A new ride starts with every seat available and one change record."""
    ride, instances = await container.rides.create_ride(driver.id, ride_create())

    assert instances == []
    assert ride.status == RideStatus.ACTIVE
    assert ride.total_seats == ride.available_seats == 3
    assert ride.booked_seats == 0
    assert ride.version == 1
    assert ride.departure_at == DEPARTURE
    assert ride.estimated_distance_km > 0
    assert ride.wait_time_minutes == container.settings.RIDE_DEFAULT_WAIT_MINUTES

    async with container.session_factory() as db:
        records = (await db.execute(select(ChangeRecord))).scalars().all()
    assert [(r.entity_type, r.kind) for r in records] == [("ride", "created")]
    assert records[0].after["available_seats"] == 3


@pytest.mark.asyncio
async def test_create_ride_with_pickup_points(container, driver):
    ride, _ = await container.rides.create_ride(
        driver.id,
        ride_create(
            pickup_points=[
                {"name": "Library", "lat": 52.2, "lng": 0.12},
                {"name": "Sports Centre", "lat": 52.198, "lng": 0.13, "estimated_offset_minutes": 12},
            ]
        ),
    )
    assert [(p.name, p.order) for p in ride.pickup_points] == [("Library", 1), ("Sports Centre", 2)]
    assert [p.estimated_offset_minutes for p in ride.pickup_points] == [5, 12]


@pytest.mark.asyncio
async def test_create_ride_requires_verified_driver(container):
    pending = await add_user(
        container, "pending@example.edu", is_driver=True, driver_status=DriverStatus.PENDING
    )
    await add_vehicle(container, pending.id, "PEN 001")

    with pytest.raises(ForbiddenError) as exc:
        await container.rides.create_ride(pending.id, ride_create())
    assert exc.value.code == "DRIVER_NOT_VERIFIED"


@pytest.mark.asyncio
async def test_create_ride_rejects_non_driver(container, passenger):
    with pytest.raises(ForbiddenError) as exc:
        await container.rides.create_ride(passenger.id, ride_create())
    assert exc.value.code == "USER_NOT_DRIVER"


@pytest.mark.asyncio
async def test_create_ride_requires_approved_vehicle(container):
    user = await add_user(
        container, "newcar@example.edu", is_driver=True, driver_status=DriverStatus.VERIFIED
    )
    await add_vehicle(container, user.id, "NEW 002", verification_status="pending")

    with pytest.raises(ForbiddenError) as exc:
        await container.rides.create_ride(user.id, ride_create())
    assert exc.value.code == "VEHICLE_NOT_VERIFIED"


@pytest.mark.asyncio
async def test_create_ride_seats_exceed_vehicle_capacity(container, driver):
    with pytest.raises(ValidationError) as exc:
        await container.rides.create_ride(driver.id, ride_create(seats=5))
    assert exc.value.code == "SEATS_EXCEED_CAPACITY"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "departure, code",
    [
        (FIXED_NOW + timedelta(minutes=10), "DEPARTURE_TOO_SOON"),
        (FIXED_NOW + timedelta(days=8), "DEPARTURE_TOO_FAR"),
    ],
)
async def test_create_ride_departure_window(container, driver, departure, code):
    with pytest.raises(ValidationError) as exc:
        await container.rides.create_ride(driver.id, ride_create(departure_at=departure.isoformat()))
    assert exc.value.code == code


@pytest.mark.asyncio
@pytest.mark.parametrize("price", [50, 2500])
async def test_create_ride_price_range(container, driver, price):
    with pytest.raises(ValidationError) as exc:
        await container.rides.create_ride(driver.id, ride_create(price_per_seat=price))
    assert exc.value.code == "INVALID_PRICE"


@pytest.mark.asyncio
async def test_overlapping_rides_rejected(container, driver, ride):
    """A second ride within 30 minutes of another is a conflict."""
    with pytest.raises(ConflictError) as exc:
        await container.rides.create_ride(
            driver.id, ride_create(departure_at=(DEPARTURE + timedelta(minutes=20)).isoformat())
        )
    assert exc.value.code == "RIDE_TIME_CONFLICT"
    assert exc.value.details == {"conflicting_ride_id": ride.id}


@pytest.mark.asyncio
async def test_ride_exactly_thirty_minutes_apart_allowed(container, driver, ride):
    later, _ = await container.rides.create_ride(
        driver.id, ride_create(departure_at=(DEPARTURE + timedelta(minutes=30)).isoformat())
    )
    assert later.id != ride.id


@pytest.mark.asyncio
async def test_cancelled_ride_does_not_block_schedule(container, driver, ride):
    await container.rides.cancel_ride(ride.id, driver.id)
    replacement, _ = await container.rides.create_ride(driver.id, ride_create())
    assert replacement.departure_at == ride.departure_at


@pytest.mark.asyncio
async def test_recurring_ride_expands_instances(container, driver):
    parent, instances = await container.rides.create_ride(
        driver.id,
        ride_create(
            is_recurring=True,
            recurring_days=["monday", "wednesday"],
            recurring_end_date="2026-11-01",
        ),
    )

    assert parent.is_recurring
    assert parent.recurring_instance_count == 3
    assert [i.departure_at.date() for i in instances] == [
        date(2026, 10, 21), date(2026, 10, 26), date(2026, 10, 28),
    ]
    for instance in instances:
        assert instance.parent_ride_id == parent.id
        assert instance.is_recurring_instance
        assert not instance.is_recurring
        assert instance.departure_at.timetz() == parent.departure_at.timetz()
        assert instance.available_seats == instance.total_seats == 3

    listed = await container.rides.list_recurring_instances(parent.id)
    assert [r.id for r in listed] == [i.id for i in instances]


@pytest.mark.asyncio
async def test_update_ride_fields(container, driver, ride):
    updated = await container.rides.update_ride(
        ride.id, driver.id, RideUpdate(price_per_seat=700, notes="Two bags max")
    )
    assert updated.price_per_seat == 700
    assert updated.notes == "Two bags max"
    assert updated.version == ride.version + 1


@pytest.mark.asyncio
async def test_update_ride_seats_keep_counters_consistent(container, driver, passenger, ride):
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id, seats=2))

    with pytest.raises(BadRequestError) as exc:
        await container.rides.update_ride(ride.id, driver.id, RideUpdate(seats=1))
    assert exc.value.code == "SEATS_BELOW_BOOKED"

    updated = await container.rides.update_ride(ride.id, driver.id, RideUpdate(seats=2))
    assert updated.total_seats == 2
    assert updated.available_seats == 0
    assert updated.booked_seats == 2
    assert updated.status == RideStatus.FULL


@pytest.mark.asyncio
async def test_update_ride_by_other_user_forbidden(container, passenger, ride):
    with pytest.raises(ForbiddenError) as exc:
        await container.rides.update_ride(ride.id, passenger.id, RideUpdate(price_per_seat=600))
    assert exc.value.code == "NOT_RIDE_OWNER"


@pytest.mark.asyncio
async def test_cancel_ride_cascades_to_bookings(container, driver, passenger, other_passenger, ride):
    first = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id, seats=1))
    second = await container.bookings.create_booking(
        other_passenger.id, BookingCreate(ride_id=ride.id, seats=2)
    )

    cancelled, affected = await container.rides.cancel_ride(ride.id, driver.id, "Car broke down")

    assert cancelled.status == RideStatus.CANCELLED
    assert cancelled.cancellation_reason == "Car broke down"
    assert cancelled.cancelled_at == FIXED_NOW
    # Seats stay booked on a cancelled ride
    assert cancelled.booked_seats == 3
    assert cancelled.available_seats == 0
    assert sorted(b.id for b in affected) == sorted([first.id, second.id])

    for booking_id in (first.id, second.id):
        booking = await container.bookings.get_booking(booking_id, driver.id)
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancellation_source == CancellationSource.RIDE_CANCELLED
        assert booking.cancellation_reason == "Car broke down"


@pytest.mark.asyncio
async def test_cancel_ride_twice_rejected(container, driver, ride):
    await container.rides.cancel_ride(ride.id, driver.id)
    with pytest.raises(BadRequestError) as exc:
        await container.rides.cancel_ride(ride.id, driver.id)
    assert exc.value.code == "RIDE_NOT_CANCELLABLE"


@pytest.mark.asyncio
async def test_cancel_recurring_series(container, driver, passenger):
    parent, instances = await container.rides.create_ride(
        driver.id,
        ride_create(
            is_recurring=True,
            recurring_days=["monday", "wednesday"],
            recurring_end_date="2026-11-01",
        ),
    )
    # One instance is already cancelled on its own and must be left alone
    await container.rides.cancel_ride(instances[0].id, driver.id)
    booking = await container.bookings.create_booking(
        passenger.id, BookingCreate(ride_id=instances[1].id, seats=1)
    )

    cancelled_ids, affected = await container.rides.cancel_recurring_series(parent.id, driver.id)

    assert cancelled_ids == [parent.id, instances[1].id, instances[2].id]
    assert [b.id for b in affected] == [booking.id]
    for ride in await container.rides.list_recurring_instances(parent.id):
        assert ride.status == RideStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_series_requires_recurring_parent(container, driver, ride):
    with pytest.raises(BadRequestError) as exc:
        await container.rides.cancel_recurring_series(ride.id, driver.id)
    assert exc.value.code == "RIDE_NOT_RECURRING"


@pytest.mark.asyncio
async def test_ride_lifecycle(container, driver, clock, ride):
    with pytest.raises(BadRequestError) as exc:
        await container.rides.complete_ride(ride.id, driver.id)
    assert exc.value.code == "RIDE_INVALID_STATUS"

    clock.advance(hours=2)
    started = await container.rides.start_ride(ride.id, driver.id)
    assert started.status == RideStatus.IN_PROGRESS
    assert started.started_at == DEPARTURE

    clock.advance(minutes=45)
    completed = await container.rides.complete_ride(ride.id, driver.id)
    assert completed.status == RideStatus.COMPLETED
    assert completed.actual_duration_minutes == 45

    with pytest.raises(BadRequestError):
        await container.rides.cancel_ride(ride.id, driver.id)


@pytest.mark.asyncio
async def test_pickup_point_management(container, driver, ride):
    await container.rides.add_pickup_point(ride.id, driver.id, PickupPointCreate(name="Library", lat=52.2, lng=0.12))
    await container.rides.add_pickup_point(ride.id, driver.id, PickupPointCreate(name="Gym", lat=52.19, lng=0.13))
    updated = await container.rides.add_pickup_point(
        ride.id, driver.id, PickupPointCreate(name="Market", lat=52.18, lng=0.14)
    )
    ids = [p.id for p in updated.pickup_points]
    assert [p.order for p in updated.pickup_points] == [1, 2, 3]

    reordered = await container.rides.reorder_pickup_points(ride.id, driver.id, list(reversed(ids)))
    assert [p.name for p in reordered.pickup_points] == ["Market", "Gym", "Library"]

    trimmed = await container.rides.remove_pickup_point(ride.id, driver.id, ids[1])
    assert [(p.name, p.order) for p in trimmed.pickup_points] == [("Market", 1), ("Library", 2)]


@pytest.mark.asyncio
async def test_reorder_must_list_every_point(container, driver, ride):
    updated = await container.rides.add_pickup_point(
        ride.id, driver.id, PickupPointCreate(name="Library", lat=52.2, lng=0.12)
    )
    updated = await container.rides.add_pickup_point(
        ride.id, driver.id, PickupPointCreate(name="Gym", lat=52.19, lng=0.13)
    )

    with pytest.raises(ValidationError) as exc:
        await container.rides.reorder_pickup_points(ride.id, driver.id, [updated.pickup_points[0].id])
    assert exc.value.code == "INVALID_PICKUP_ORDER"


@pytest.mark.asyncio
async def test_pickup_point_limit(container, driver, ride):
    for n in range(container.settings.RIDE_MAX_PICKUP_POINTS):
        await container.rides.add_pickup_point(
            ride.id, driver.id, PickupPointCreate(name=f"Stop {n}", lat=52.2, lng=0.12)
        )
    with pytest.raises(BadRequestError) as exc:
        await container.rides.add_pickup_point(
            ride.id, driver.id, PickupPointCreate(name="One too many", lat=52.2, lng=0.12)
        )
    assert exc.value.code == "TOO_MANY_PICKUP_POINTS"


@pytest.mark.asyncio
async def test_pickup_point_in_use_cannot_be_removed(container, driver, passenger, ride):
    updated = await container.rides.add_pickup_point(
        ride.id, driver.id, PickupPointCreate(name="Library", lat=52.2, lng=0.12)
    )
    point_id = updated.pickup_points[0].id
    await container.bookings.create_booking(
        passenger.id, BookingCreate(ride_id=ride.id, seats=1, pickup_point_id=point_id)
    )

    with pytest.raises(BadRequestError) as exc:
        await container.rides.remove_pickup_point(ride.id, driver.id, point_id)
    assert exc.value.code == "PICKUP_POINT_IN_USE"


@pytest.mark.asyncio
async def test_list_driver_rides(container, driver, ride):
    later, _ = await container.rides.create_ride(
        driver.id, ride_create(departure_at=(DEPARTURE + timedelta(hours=3)).isoformat())
    )
    await container.rides.cancel_ride(ride.id, driver.id)

    everything = await container.rides.list_driver_rides(driver.id)
    assert [r.id for r in everything] == [later.id, ride.id]

    active = await container.rides.list_driver_rides(driver.id, status=RideStatus.ACTIVE)
    assert [r.id for r in active] == [later.id]


async def london_ride(container):
    """A second driver's ride from central London, three hours after the fixture ride."""
    other = await add_user(
        container, "sam.driver@example.edu", is_driver=True, driver_status=DriverStatus.VERIFIED
    )
    await add_vehicle(container, other.id, "LDN 456")
    created, _ = await container.rides.create_ride(
        other.id,
        ride_create(
            departure_at=(DEPARTURE + timedelta(hours=3)).isoformat(),
            origin={"address": "Kings Cross", "lat": 51.5308, "lng": -0.1238},
            destination={"address": "Heathrow T5", "lat": 51.4723, "lng": -0.4880},
            price_per_seat=900,
        ),
    )
    return created


@pytest.mark.asyncio
async def test_search_matches_pickup_within_radius(container, ride):
    far = await london_ride(container)

    everything, total = await container.rides.search_rides(RideSearch())
    assert total == 2
    assert [m.ride.id for m in everything] == [ride.id, far.id]

    nearby, total = await container.rides.search_rides(
        RideSearch(from_lat=52.2060, from_lng=0.1230, to_lat=52.1950, to_lng=0.1380)
    )
    assert total == 1
    assert nearby[0].ride.id == ride.id
    assert nearby[0].origin_distance_km < 1
    assert nearby[0].driver_first_name == "Dana.Driver"

    # Cambridge to London is far outside any search radius
    assert haversine_km(52.2060, 0.1230, 51.5308, -0.1238) > 70


@pytest.mark.asyncio
async def test_search_filters_price_seats_and_date(container, passenger, ride):
    far = await london_ride(container)

    cheap, _ = await container.rides.search_rides(RideSearch(max_price=600))
    assert [m.ride.id for m in cheap] == [ride.id]

    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id, seats=1))
    roomy, _ = await container.rides.search_rides(RideSearch(seats=3))
    assert [m.ride.id for m in roomy] == [far.id]

    tomorrow, total = await container.rides.search_rides(
        RideSearch(departure_date=FIXED_NOW.date() + timedelta(days=1))
    )
    assert (tomorrow, total) == ([], 0)


@pytest.mark.asyncio
async def test_search_excludes_unbookable_rides(container, clock, driver, ride):
    far = await london_ride(container)

    # Inside the booking cutoff the fixture ride can no longer be booked
    clock.advance(hours=1, minutes=31)
    found, _ = await container.rides.search_rides(RideSearch())
    assert [m.ride.id for m in found] == [far.id]

    await container.rides.cancel_ride(far.id, far.driver_id)
    assert await container.rides.search_rides(RideSearch()) == ([], 0)


@pytest.mark.asyncio
async def test_search_sorting_and_pages(container, ride):
    far = await london_ride(container)

    by_price, _ = await container.rides.search_rides(RideSearch(sort_by="price", sort_order="desc"))
    assert [m.ride.id for m in by_price] == [far.id, ride.id]

    second_page, total = await container.rides.search_rides(RideSearch(page=2, limit=1))
    assert total == 2
    assert [m.ride.id for m in second_page] == [far.id]

    available, total = await container.rides.list_available_rides(FIXED_NOW.date())
    assert total == 2


@pytest.mark.asyncio
async def test_list_ride_passengers_confirmed_only(container, driver, passenger, other_passenger, ride):
    confirmed = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id, seats=2))
    await container.bookings.create_booking(other_passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.confirm_booking(confirmed.id, driver.id)

    passengers = await container.rides.list_ride_passengers(ride.id, driver.id)
    assert [(b.id, u.id, b.seats) for b, u in passengers] == [(confirmed.id, passenger.id, 2)]

    with pytest.raises(ForbiddenError) as exc:
        await container.rides.list_ride_passengers(ride.id, passenger.id)
    assert exc.value.code == "NOT_RIDE_OWNER"
