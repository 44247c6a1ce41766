"""
FastAPI dependencies resolving services from the application's container.
"""

from fastapi import Request

from carpool.container import ServiceContainer
from carpool.services.booking_service import BookingLedger
from carpool.services.cache_service import CacheService
from carpool.services.rating_service import RatingService
from carpool.services.ride_service import SeatInventoryManager
from carpool.services.user_service import UserService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_ride_manager(request: Request) -> SeatInventoryManager:
    return get_container(request).rides


def get_booking_ledger(request: Request) -> BookingLedger:
    return get_container(request).bookings


def get_rating_service(request: Request) -> RatingService:
    return get_container(request).ratings


def get_user_service(request: Request) -> UserService:
    return get_container(request).users


def get_cache(request: Request) -> CacheService:
    return get_container(request).cache
