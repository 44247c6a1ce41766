"""
Ride endpoints: offers, discovery, lifecycle, recurring series and pickup points.
Ride detail reads are cached in Redis; every write path invalidates them.
"""

from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from carpool.api.deps import get_booking_ledger, get_cache, get_ride_manager
from carpool.core.logging import get_logger
from carpool.core.security import get_current_user_id
from carpool.schemas.booking import BookingResponse
from carpool.schemas.ride import (
    AffectedBooking,
    PickupPointCreate,
    PickupPointOrder,
    RecurringCancelResponse,
    RideCancel,
    RideCancelResponse,
    RideCreate,
    RideCreateResponse,
    RideMatchResponse,
    RidePassenger,
    RideResponse,
    RideSearch,
    RideSearchResponse,
    RideUpdate,
)
from carpool.services.booking_service import BookingLedger
from carpool.services.cache_service import CacheService
from carpool.services.ride_service import RideMatch, SeatInventoryManager

logger = get_logger(__name__)
router = APIRouter(prefix="/rides", tags=["Rides"])


def _affected(bookings) -> list[AffectedBooking]:
    return [
        AffectedBooking(booking_id=b.id, passenger_id=b.passenger_id, seats=b.seats)
        for b in bookings
    ]


def _search_page(
    matches: list[RideMatch], total: int, page: int, limit: int, seats: int
) -> RideSearchResponse:
    total_pages = -(-total // limit)
    return RideSearchResponse(
        rides=[
            RideMatchResponse(
                ride=RideResponse.model_validate(m.ride),
                total_price=m.ride.price_per_seat * seats,
                driver_first_name=m.driver_first_name,
                driver_rating=m.driver_rating,
                origin_distance_km=m.origin_distance_km,
                destination_distance_km=m.destination_distance_km,
            )
            for m in matches
        ],
        page=page,
        limit=limit,
        total_count=total,
        total_pages=total_pages,
        has_next_page=page < total_pages,
        has_prev_page=page > 1,
    )


@router.post("/", response_model=RideCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_ride(
    ride_data: RideCreate,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    """Offer a ride. With `is_recurring`, instances are generated for the chosen weekdays."""
    ride, instances = await rides.create_ride(user_id, ride_data)
    return RideCreateResponse(
        ride=RideResponse.model_validate(ride),
        recurring_rides=[RideResponse.model_validate(r) for r in instances],
    )


@router.get("/mine", response_model=list[RideResponse])
async def list_my_rides(
    ride_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.list_driver_rides(user_id, status=ride_status, limit=limit)


@router.get("/search", response_model=RideSearchResponse)
async def search_rides(
    departure_date: Optional[date] = Query(None, alias="date"),
    seats: int = Query(1, ge=1, le=4),
    from_lat: Optional[float] = Query(None, ge=-90, le=90),
    from_lng: Optional[float] = Query(None, ge=-180, le=180),
    to_lat: Optional[float] = Query(None, ge=-90, le=90),
    to_lng: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=50),
    max_price: Optional[int] = Query(None, gt=0),
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    sort_by: Literal["departure_at", "price", "rating", "seats"] = "departure_at",
    sort_order: Literal["asc", "desc"] = "asc",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    """Find bookable rides near a pickup and/or drop-off location."""
    criteria = RideSearch(
        departure_date=departure_date,
        seats=seats,
        from_lat=from_lat,
        from_lng=from_lng,
        to_lat=to_lat,
        to_lng=to_lng,
        radius_km=radius_km,
        max_price=max_price,
        min_rating=min_rating,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    matches, total = await rides.search_rides(criteria)
    return _search_page(matches, total, page, limit, seats)


@router.get("/available", response_model=RideSearchResponse)
async def list_available_rides(
    departure_date: Optional[date] = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    matches, total = await rides.list_available_rides(departure_date, page=page, limit=limit)
    return _search_page(matches, total, page, limit, seats=1)


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: int,
    rides: SeatInventoryManager = Depends(get_ride_manager),
    cache: CacheService = Depends(get_cache),
):
    """Get a single ride. Cached for REDIS_CACHE_TTL; invalidated on every change."""
    cached = await cache.get_ride_detail(ride_id)
    if cached:
        logger.info("ride_detail_cache_hit", ride_id=ride_id)
        return RideResponse(**cached)

    ride = await rides.get_ride(ride_id)
    response = RideResponse.model_validate(ride)
    await cache.set_ride_detail(ride_id, response.model_dump(mode="json"))
    return response


@router.patch("/{ride_id}", response_model=RideResponse)
async def update_ride(
    ride_id: int,
    patch: RideUpdate,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.update_ride(ride_id, user_id, patch)


@router.post("/{ride_id}/cancel", response_model=RideCancelResponse)
async def cancel_ride(
    ride_id: int,
    body: RideCancel,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    """Cancel a ride. Every pending or confirmed booking on it is cancelled too."""
    ride, affected = await rides.cancel_ride(ride_id, user_id, body.reason)
    return RideCancelResponse(ride_id=ride.id, status=ride.status, affected_bookings=_affected(affected))


@router.post("/{ride_id}/cancel-series", response_model=RecurringCancelResponse)
async def cancel_recurring_series(
    ride_id: int,
    body: RideCancel,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    cancelled_ids, affected = await rides.cancel_recurring_series(ride_id, user_id, body.reason)
    return RecurringCancelResponse(
        parent_ride_id=ride_id,
        cancelled_ride_ids=cancelled_ids,
        affected_bookings=_affected(affected),
    )


@router.get("/{ride_id}/instances", response_model=list[RideResponse])
async def list_recurring_instances(
    ride_id: int,
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.list_recurring_instances(ride_id)


@router.post("/{ride_id}/start", response_model=RideResponse)
async def start_ride(
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.start_ride(ride_id, user_id)


@router.post("/{ride_id}/complete", response_model=RideResponse)
async def complete_ride(
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.complete_ride(ride_id, user_id)


@router.get("/{ride_id}/bookings", response_model=list[BookingResponse])
async def list_ride_bookings(
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    bookings: BookingLedger = Depends(get_booking_ledger),
):
    """Bookings on a ride. Driver only."""
    return await bookings.list_ride_bookings(ride_id, user_id)


@router.get("/{ride_id}/passengers", response_model=list[RidePassenger])
async def list_ride_passengers(
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    """Confirmed passengers with contact details. Driver only."""
    passengers = await rides.list_ride_passengers(ride_id, user_id)
    return [
        RidePassenger(
            booking_id=booking.id,
            passenger_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            seats=booking.seats,
            pickup_point_id=booking.pickup_point_id,
            booked_at=booking.created_at,
        )
        for booking, user in passengers
    ]


@router.post("/{ride_id}/pickup-points", response_model=RideResponse, status_code=status.HTTP_201_CREATED)
async def add_pickup_point(
    ride_id: int,
    point: PickupPointCreate,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.add_pickup_point(ride_id, user_id, point)


@router.delete("/{ride_id}/pickup-points/{pickup_point_id}", response_model=RideResponse)
async def remove_pickup_point(
    ride_id: int,
    pickup_point_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.remove_pickup_point(ride_id, user_id, pickup_point_id)


@router.put("/{ride_id}/pickup-points/order", response_model=RideResponse)
async def reorder_pickup_points(
    ride_id: int,
    body: PickupPointOrder,
    user_id: int = Depends(get_current_user_id),
    rides: SeatInventoryManager = Depends(get_ride_manager),
):
    return await rides.reorder_pickup_points(ride_id, user_id, body.pickup_point_ids)
