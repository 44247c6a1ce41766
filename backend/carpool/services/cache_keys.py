"""
Cache key naming and invalidation key derivation.

All keys live under the ``carpool:`` prefix. ``invalidation_keys`` maps an
entity mutation to every cached read model that may now show stale seat
counts or statuses; owning services delete those keys right after commit.
Pure functions, no I/O.
"""

from typing import Optional

PREFIX = "carpool"

RIDE = f"{PREFIX}:ride"
BOOKING = f"{PREFIX}:booking"
RATING = f"{PREFIX}:rating"
USER = f"{PREFIX}:user"


# Rides
def ride_detail(ride_id: int) -> str:
    return f"{RIDE}:detail:{ride_id}"


def ride_passengers(ride_id: int) -> str:
    return f"{RIDE}:passengers:{ride_id}"


def ride_seats(ride_id: int) -> str:
    return f"{RIDE}:seats:{ride_id}"


def ride_pickup_points(ride_id: int) -> str:
    return f"{RIDE}:pickups:{ride_id}"


def driver_rides(driver_id: int, status: Optional[str] = None) -> str:
    return f"{RIDE}:driver:{driver_id}:{status or 'all'}"


def active_ride_by_driver(driver_id: int) -> str:
    return f"{RIDE}:active:{driver_id}"


def recurring_instances(parent_ride_id: int) -> str:
    return f"{RIDE}:recurring:{parent_ride_id}"


# Bookings
def booking_detail(booking_id: int) -> str:
    return f"{BOOKING}:detail:{booking_id}"


def user_bookings(user_id: int, status: Optional[str] = None) -> str:
    return f"{BOOKING}:user:{user_id}:{status or 'all'}"


def driver_bookings(driver_id: int, status: Optional[str] = None) -> str:
    return f"{BOOKING}:driver:{driver_id}:{status or 'all'}"


def ride_bookings(ride_id: int) -> str:
    return f"{BOOKING}:ride:{ride_id}"


# Ratings
def user_ratings(user_id: int) -> str:
    return f"{RATING}:user:{user_id}"


def average_rating(user_id: int) -> str:
    return f"{RATING}:avg:{user_id}"


def booking_rating(booking_id: int) -> str:
    return f"{RATING}:booking:{booking_id}"


# Users
def user_profile(user_id: int) -> str:
    return f"{USER}:profile:{user_id}"


def driver_status(user_id: int) -> str:
    return f"{USER}:driver-status:{user_id}"


def user_vehicles(user_id: int) -> str:
    return f"{USER}:vehicles:{user_id}"


def invalidation_keys(entity: str, **context) -> list[str]:
    """
    Keys to delete after a mutation of ``entity``.

    ``context`` carries whichever identifiers the caller has: ride_id,
    driver_id, booking_id, passenger_id, parent_ride_id, rating_id,
    rated_user_id, user_id. Unknown entities yield no keys. The result keeps
    first-seen order and contains no duplicates.
    """
    keys: list[str] = []

    if entity == "ride":
        ride_id = context.get("ride_id")
        driver_id = context.get("driver_id")
        parent_ride_id = context.get("parent_ride_id")
        if ride_id is not None:
            keys += [
                ride_detail(ride_id),
                ride_passengers(ride_id),
                ride_seats(ride_id),
                ride_pickup_points(ride_id),
                ride_bookings(ride_id),
            ]
        if driver_id is not None:
            keys += [
                driver_rides(driver_id),
                driver_rides(driver_id, "active"),
                driver_rides(driver_id, "completed"),
                active_ride_by_driver(driver_id),
            ]
        if parent_ride_id is not None:
            keys.append(recurring_instances(parent_ride_id))

    elif entity == "booking":
        booking_id = context.get("booking_id")
        passenger_id = context.get("passenger_id")
        driver_id = context.get("driver_id")
        ride_id = context.get("ride_id")
        if booking_id is not None:
            keys.append(booking_detail(booking_id))
        if passenger_id is not None:
            keys += [
                user_bookings(passenger_id),
                user_bookings(passenger_id, "pending"),
                user_bookings(passenger_id, "confirmed"),
                user_bookings(passenger_id, "completed"),
            ]
        if driver_id is not None:
            keys += [
                driver_bookings(driver_id),
                driver_bookings(driver_id, "pending"),
                driver_bookings(driver_id, "confirmed"),
            ]
        if ride_id is not None:
            # Seat counters moved with the booking
            keys += [
                ride_bookings(ride_id),
                ride_seats(ride_id),
                ride_passengers(ride_id),
                ride_detail(ride_id),
            ]

    elif entity == "rating":
        rated_user_id = context.get("rated_user_id")
        booking_id = context.get("booking_id")
        if rated_user_id is not None:
            keys += [
                user_ratings(rated_user_id),
                average_rating(rated_user_id),
                user_profile(rated_user_id),
            ]
        if booking_id is not None:
            keys.append(booking_rating(booking_id))

    elif entity == "user":
        user_id = context.get("user_id")
        if user_id is not None:
            keys += [user_profile(user_id), driver_status(user_id), user_vehicles(user_id)]

    return list(dict.fromkeys(keys))
