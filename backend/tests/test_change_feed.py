"""
Tests for the change-feed outbox and the notification pipeline it drives.
"""

import pytest
import structlog
from sqlalchemy import select, update

from carpool.container import build_container
from carpool.db.session import create_session_factory
from carpool.models.change_record import ChangeRecord
from carpool.models.vehicle import VehicleStatus
from carpool.notifications.change_events import ChangeEvent, ChangeKind, EntityType
from carpool.notifications.router import ChangeEventRouter, RouteTally
from carpool.schemas.booking import BookingCreate
from carpool.schemas.rating import RatingCreate
from carpool.services.change_feed import ChangeFeedConsumer

from conftest import FIXED_NOW, add_user, add_vehicle, ride_create


async def pending_records(container) -> list[ChangeRecord]:
    async with container.session_factory() as db:
        result = await db.execute(
            select(ChangeRecord).where(ChangeRecord.processed_at.is_(None)).order_by(ChangeRecord.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_drain_marks_records_processed(container, transport, passenger, ride):
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    assert len(await pending_records(container)) == 3

    tally = await container.change_feed.drain()

    assert tally.total == 3
    assert tally.errored == 0
    assert await pending_records(container) == []

    async with container.session_factory() as db:
        records = (await db.execute(select(ChangeRecord))).scalars().all()
    assert {r.processed_at for r in records} == {FIXED_NOW}

    # Nothing left to do
    assert (await container.change_feed.drain()).total == 0


@pytest.mark.asyncio
async def test_new_booking_notifies_driver(container, transport, driver, passenger, ride):
    booking = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id, seats=2))
    await container.change_feed.drain()

    assert transport.templates() == ["new_booking"]
    envelope = transport.sent[0]
    assert envelope.recipient.user_id == driver.id
    assert envelope.recipient.email == driver.email
    assert envelope.metadata.source == "booking-service"
    assert envelope.metadata.priority == "high"
    assert envelope.payload.data["booking_id"] == booking.id
    assert envelope.payload.data["seats"] == 2


@pytest.mark.asyncio
async def test_redelivered_records_do_not_duplicate_notifications(container, transport, passenger, ride):
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.change_feed.drain()
    assert len(transport.sent) == 1

    # Simulate a crash after routing but before the processed mark stuck
    async with container.session_factory() as db:
        async with db.begin():
            await db.execute(update(ChangeRecord).values(processed_at=None))

    tally = await container.change_feed.drain()
    assert tally.processed == 3
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_booking_confirmed_notifies_passenger(container, transport, driver, passenger, ride):
    booking = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.confirm_booking(booking.id, driver.id)
    await container.change_feed.drain()

    confirmed = [e for e in transport.sent if e.payload.template == "booking_confirmed"]
    assert len(confirmed) == 1
    assert confirmed[0].recipient.user_id == passenger.id
    assert confirmed[0].payload.data["verification_code"] == booking.verification_code


@pytest.mark.asyncio
async def test_passenger_cancellation_notifies_driver(container, transport, driver, passenger, ride):
    booking = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.cancel_booking(booking.id, passenger.id, "Exam moved")
    await container.change_feed.drain()

    cancelled = [e for e in transport.sent if e.payload.template == "booking_cancelled"]
    assert [e.recipient.user_id for e in cancelled] == [driver.id]
    assert cancelled[0].payload.data["reason"] == "Exam moved"


@pytest.mark.asyncio
async def test_driver_cancellation_notifies_passenger(container, transport, driver, passenger, ride):
    booking = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.cancel_booking(booking.id, driver.id)
    await container.change_feed.drain()

    cancelled = [e for e in transport.sent if e.payload.template == "booking_cancelled"]
    assert [e.recipient.user_id for e in cancelled] == [passenger.id]
    assert cancelled[0].payload.data["reason"] == "No reason provided"


@pytest.mark.asyncio
async def test_ride_cancellation_notifies_each_passenger_once(
    container, transport, driver, passenger, other_passenger, ride
):
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.create_booking(other_passenger.id, BookingCreate(ride_id=ride.id))
    await container.rides.cancel_ride(ride.id, driver.id, "Snow")
    await container.change_feed.drain()

    assert "booking_cancelled" not in transport.templates()
    ride_cancelled = [e for e in transport.sent if e.payload.template == "ride_cancelled"]
    assert sorted(e.recipient.user_id for e in ride_cancelled) == sorted([passenger.id, other_passenger.id])
    assert all(e.payload.data["reason"] == "Snow" for e in ride_cancelled)


@pytest.mark.asyncio
async def test_ride_start_notifies_confirmed_passengers(
    container, transport, clock, driver, passenger, other_passenger, ride
):
    confirmed = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.create_booking(other_passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.confirm_booking(confirmed.id, driver.id)

    clock.advance(hours=2)
    await container.rides.start_ride(ride.id, driver.id)
    await container.change_feed.drain()

    departing = [e for e in transport.sent if e.payload.template == "driver_departing"]
    assert [e.recipient.user_id for e in departing] == [passenger.id]


@pytest.mark.asyncio
async def test_completed_booking_prompts_both_parties_and_rating_updates_average(
    container, transport, driver, passenger, ride
):
    booking = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.confirm_booking(booking.id, driver.id)
    await container.bookings.start_booking(booking.id, driver.id, booking.verification_code)
    await container.bookings.complete_booking(booking.id, driver.id)
    await container.ratings.rate_booking(passenger.id, RatingCreate(booking_id=booking.id, score=4))

    tally = await container.change_feed.drain()
    assert tally.errored == 0

    prompts = [e for e in transport.sent if e.payload.template == "rate_prompt"]
    assert sorted(e.recipient.user_id for e in prompts) == sorted([driver.id, passenger.id])

    received = [e for e in transport.sent if e.payload.template == "new_rating"]
    assert [e.recipient.user_id for e in received] == [driver.id]

    rated = await container.users.get_user(driver.id)
    assert rated.average_rating == 4.0
    assert rated.total_ratings == 1


@pytest.mark.asyncio
async def test_user_changes_notify(container, transport):
    user = await add_user(container, "fresh@example.edu", is_verified=False)
    await container.users.verify_email(user.id)
    await container.users.apply_as_driver(user.id)
    await container.users.reject_driver(user.id, "Licence photo unreadable")
    await container.change_feed.drain()

    assert transport.templates() == ["welcome", "driver_rejected"]
    assert transport.sent[1].payload.data["reason"] == "Licence photo unreadable"


@pytest.mark.asyncio
async def test_repeated_driver_rejection_is_notified_each_time(container, transport, passenger):
    await container.users.apply_as_driver(passenger.id)
    await container.users.reject_driver(passenger.id, "Blurry photo")
    await container.change_feed.drain()

    await container.users.apply_as_driver(passenger.id)
    await container.users.reject_driver(passenger.id, "Expired licence")
    await container.change_feed.drain()

    rejections = [e for e in transport.sent if e.payload.template == "driver_rejected"]
    assert [e.payload.data["reason"] for e in rejections] == ["Blurry photo", "Expired licence"]
    assert rejections[0].correlation_id != rejections[1].correlation_id


@pytest.mark.asyncio
async def test_ride_cancellation_skips_already_cancelled_bookings(
    container, transport, driver, passenger, other_passenger, ride
):
    early = await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.cancel_booking(early.id, passenger.id, "Plans changed")

    riders = [other_passenger]
    for n in range(2):
        riders.append(await add_user(container, f"rider{n}@example.edu"))
    bookings = [
        await container.bookings.create_booking(rider.id, BookingCreate(ride_id=ride.id))
        for rider in riders
    ]
    await container.bookings.confirm_booking(bookings[0].id, driver.id)

    _, affected = await container.rides.cancel_ride(ride.id, driver.id, "Engine trouble")
    assert sorted(b.id for b in affected) == sorted(b.id for b in bookings)

    await container.change_feed.drain()
    notices = [e for e in transport.sent if e.payload.template == "ride_cancelled"]
    assert sorted(e.recipient.user_id for e in notices) == sorted(r.id for r in riders)
    assert passenger.id not in {e.recipient.user_id for e in notices}


@pytest.mark.asyncio
async def test_vehicle_changes_are_skipped(container, transport, driver):
    vehicle = await container.users.register_vehicle(driver.id, "Honda", "Jazz", "abc 987", 4)
    await container.users.set_vehicle_status(vehicle.id, VehicleStatus.APPROVED)

    tally = await container.change_feed.drain()
    assert tally.skipped == 2
    assert transport.sent == []


@pytest.mark.asyncio
async def test_unknown_entity_tag_is_skipped(container, transport):
    async with container.session_factory() as db:
        async with db.begin():
            db.add(ChangeRecord(entity_type="invoice", entity_id=1, kind="created", after={"id": 1}))

    tally = await container.change_feed.drain_once()
    assert tally.skipped == 1
    assert await pending_records(container) == []


@pytest.mark.asyncio
async def test_drain_works_in_batches(container, driver, passenger, other_passenger, ride):
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))
    await container.bookings.create_booking(other_passenger.id, BookingCreate(ride_id=ride.id))

    consumer = ChangeFeedConsumer(container.session_factory, container.router, batch_size=2)
    first = await consumer.drain_once()
    assert first.total == 2
    assert len(await pending_records(container)) == 3

    rest = await consumer.drain()
    assert rest.total == 3


@pytest.mark.asyncio
async def test_failing_processor_does_not_stop_batch():
    class Flaky:
        def __init__(self):
            self.seen = []

        async def process(self, kind, before, after, record_id=None):
            self.seen.append(record_id)
            if record_id == 3:
                raise RuntimeError("boom")

    flaky = Flaky()
    router = ChangeEventRouter({EntityType.BOOKING: flaky, EntityType.RIDE: flaky})
    events = [
        ChangeEvent(
            EntityType.BOOKING if record_id % 2 else EntityType.RIDE,
            ChangeKind.MODIFIED,
            {"id": record_id},
            {"id": record_id},
            record_id=record_id,
        )
        for record_id in range(1, 6)
    ]

    tally = await router.route(events)

    assert tally == RouteTally(processed=4, skipped=0, errored=1)
    assert flaky.seen == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_events_without_processor_are_skipped():
    router = ChangeEventRouter({})
    tally = await router.route([ChangeEvent(EntityType.USER, ChangeKind.MODIFIED, {"id": 3}, {"id": 3})])
    assert tally == RouteTally(processed=0, skipped=1, errored=0)


@pytest.mark.asyncio
async def test_unconfigured_transport_still_drains(engine, settings, clock, passenger):
    """With no transport, records are processed and publishing is a no-op."""
    container = build_container(settings, engine, create_session_factory(engine), clock=clock)
    assert not container.publisher.configured

    driver = await add_user(container, "solo@example.edu", is_driver=True, driver_status="verified")
    await add_vehicle(container, driver.id, "SOL 001")
    ride, _ = await container.rides.create_ride(driver.id, ride_create())
    await container.bookings.create_booking(passenger.id, BookingCreate(ride_id=ride.id))

    tally = await container.change_feed.drain()
    assert tally.processed == 3
    assert tally.errored == 0


def test_change_event_helpers():
    event = ChangeEvent(
        EntityType.BOOKING,
        ChangeKind.MODIFIED,
        {"id": 7, "status": "pending"},
        {"id": 7, "status": "confirmed"},
    )
    assert event.entity_id == 7
    assert event.field_changed("status")
    assert not event.field_changed("id")


@pytest.mark.asyncio
async def test_processor_logs_carry_change_record_identity():
    seen = {}

    class Inspecting:
        async def process(self, kind, before, after, record_id=None):
            seen.update(structlog.contextvars.get_contextvars())

    router = ChangeEventRouter({EntityType.RIDE: Inspecting()})
    await router.route([ChangeEvent(EntityType.RIDE, ChangeKind.CREATED, None, {"id": 4}, record_id=17)])

    assert (seen["record_id"], seen["entity_type"], seen["change_kind"]) == (17, "ride", "created")
    assert "record_id" not in structlog.contextvars.get_contextvars()
