"""
Tests for cache key derivation and the Redis-optional cache service.
"""

import pytest

from carpool.services import cache_keys
from carpool.services.cache_service import CacheService


class FakeRedis:
    def __init__(self, broken: bool = False):
        self.store: dict[str, str] = {}
        self.broken = broken

    async def get(self, key):
        if self.broken:
            raise ConnectionError("redis went away")
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def delete(self, *keys):
        if self.broken:
            raise ConnectionError("redis went away")
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


def test_key_names_share_prefix():
    assert cache_keys.ride_detail(5) == "carpool:ride:detail:5"
    assert cache_keys.user_bookings(9) == "carpool:booking:user:9:all"
    assert cache_keys.user_bookings(9, "pending") == "carpool:booking:user:9:pending"
    assert cache_keys.average_rating(3) == "carpool:rating:avg:3"


def test_booking_invalidation_touches_ride_read_models():
    keys = cache_keys.invalidation_keys("booking", booking_id=1, passenger_id=2, driver_id=3, ride_id=4)
    assert cache_keys.booking_detail(1) in keys
    assert cache_keys.user_bookings(2) in keys
    assert cache_keys.driver_bookings(3) in keys
    # Seat counts moved, so every ride view is stale
    assert cache_keys.ride_detail(4) in keys
    assert cache_keys.ride_seats(4) in keys
    assert len(keys) == len(set(keys))


def test_ride_invalidation_keys():
    keys = cache_keys.invalidation_keys("ride", ride_id=1, driver_id=2, parent_ride_id=3)
    assert keys[0] == cache_keys.ride_detail(1)
    assert cache_keys.driver_rides(2) in keys
    assert cache_keys.active_ride_by_driver(2) in keys
    assert cache_keys.recurring_instances(3) in keys


def test_invalidation_without_identifiers_is_empty():
    assert cache_keys.invalidation_keys("ride") == []
    assert cache_keys.invalidation_keys("ride", parent_ride_id=None) == []
    assert cache_keys.invalidation_keys("spaceship", ride_id=1) == []


def test_rating_and_user_invalidation_keys():
    assert cache_keys.invalidation_keys("rating", rated_user_id=4, booking_id=8) == [
        cache_keys.user_ratings(4),
        cache_keys.average_rating(4),
        cache_keys.user_profile(4),
        cache_keys.booking_rating(8),
    ]
    assert cache_keys.invalidation_keys("user", user_id=2) == [
        cache_keys.user_profile(2),
        cache_keys.driver_status(2),
        cache_keys.user_vehicles(2),
    ]


@pytest.mark.asyncio
async def test_cache_disabled_is_a_no_op():
    cache = CacheService(None)
    assert not cache.enabled
    assert await cache.get_ride_detail(1) is None
    await cache.set_ride_detail(1, {"id": 1})
    assert await cache.invalidate_entity("ride", ride_id=1) == 0
    assert await cache.stats() == {"status": "disabled"}


@pytest.mark.asyncio
async def test_cache_round_trip_and_invalidation():
    client = FakeRedis()
    cache = CacheService(client, ttl=60)

    await cache.set_ride_detail(1, {"id": 1, "available_seats": 3})
    assert await cache.get_ride_detail(1) == {"id": 1, "available_seats": 3}

    deleted = await cache.invalidate_entity("booking", booking_id=9, ride_id=1)
    assert deleted == 1
    assert await cache.get_ride_detail(1) is None


@pytest.mark.asyncio
async def test_cache_errors_never_raise():
    cache = CacheService(FakeRedis(broken=True))
    assert await cache.get_ride_detail(1) is None
    assert await cache.invalidate(["carpool:ride:detail:1"]) == 0
