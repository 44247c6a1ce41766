"""
Service wiring.

Everything stateful (engine, Redis client, transport) is created once here
and handed to the services through their constructors. The transport is
chosen at this point; services never look it up again.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from carpool.core.clock import Clock, utcnow
from carpool.core.config import Settings
from carpool.notifications.change_events import EntityType
from carpool.notifications.processors import (
    BookingChangeProcessor, RatingChangeProcessor, RideChangeProcessor, UserChangeProcessor,
)
from carpool.notifications.publisher import AsyncPublisher
from carpool.notifications.router import ChangeEventRouter
from carpool.notifications.transport import NotificationTransport, build_transport
from carpool.services.booking_service import BookingLedger
from carpool.services.cache_service import CacheService
from carpool.services.change_feed import ChangeFeedConsumer
from carpool.services.rating_service import RatingService
from carpool.services.ride_service import SeatInventoryManager
from carpool.services.user_service import UserService


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    cache: CacheService
    publisher: AsyncPublisher
    rides: SeatInventoryManager
    bookings: BookingLedger
    ratings: RatingService
    users: UserService
    router: ChangeEventRouter
    change_feed: ChangeFeedConsumer


def build_router(
    session_factory: async_sessionmaker[AsyncSession], publisher: AsyncPublisher
) -> ChangeEventRouter:
    return ChangeEventRouter(
        {
            EntityType.BOOKING: BookingChangeProcessor(session_factory, publisher),
            EntityType.RIDE: RideChangeProcessor(session_factory, publisher),
            EntityType.RATING: RatingChangeProcessor(session_factory, publisher),
            EntityType.USER: UserChangeProcessor(session_factory, publisher),
        }
    )


def build_container(
    settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: Optional[redis.Redis] = None,
    transport: Optional[NotificationTransport] = None,
    clock: Clock = utcnow,
) -> ServiceContainer:
    """
    Wire the services. ``transport`` overrides the one derived from
    settings (tests pass an in-memory transport).
    """
    cache = CacheService(redis_client, ttl=settings.REDIS_CACHE_TTL)
    if transport is None:
        transport = build_transport(settings, redis_client)
    publisher = AsyncPublisher(transport)

    bookings = BookingLedger(session_factory, cache, settings, clock=clock)
    rides = SeatInventoryManager(session_factory, bookings, cache, settings, clock=clock)
    router = build_router(session_factory, publisher)

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        cache=cache,
        publisher=publisher,
        rides=rides,
        bookings=bookings,
        ratings=RatingService(session_factory, cache),
        users=UserService(session_factory, cache),
        router=router,
        change_feed=ChangeFeedConsumer(
            session_factory,
            router,
            clock=clock,
            batch_size=settings.CHANGE_FEED_BATCH_SIZE,
        ),
    )
