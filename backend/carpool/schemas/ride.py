"""
Pydantic schemas for ride-related request/response validation.
"""

from datetime import date, datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

WEEKDAYS: tuple[str, ...] = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)


class Location(BaseModel):
    address: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PickupPointCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = Field(None, max_length=255)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    estimated_offset_minutes: Optional[int] = Field(None, ge=0, le=240)


class RideCreate(BaseModel):
    vehicle_id: Optional[int] = None
    departure_at: datetime
    origin: Location
    destination: Location
    pickup_points: list[PickupPointCreate] = Field(default_factory=list)
    seats: int = Field(..., gt=0, le=7)
    price_per_seat: int
    wait_time_minutes: Optional[int] = Field(None, ge=0, le=15)
    notes: Optional[str] = Field(None, max_length=1000)
    is_recurring: bool = False
    recurring_days: list[Weekday] = Field(default_factory=list)
    recurring_end_date: Optional[date] = None


class RideUpdate(BaseModel):
    departure_at: Optional[datetime] = None
    price_per_seat: Optional[int] = None
    wait_time_minutes: Optional[int] = Field(None, ge=0, le=15)
    seats: Optional[int] = Field(None, gt=0, le=7)
    notes: Optional[str] = Field(None, max_length=1000)


class RideCancel(BaseModel):
    reason: str = Field("", max_length=500)


class PickupPointOrder(BaseModel):
    pickup_point_ids: list[int] = Field(..., min_length=1)


class PickupPointResponse(BaseModel):
    id: int
    name: str
    address: Optional[str]
    lat: float
    lng: float
    estimated_offset_minutes: int
    order: int

    model_config = {"from_attributes": True}


class RideResponse(BaseModel):
    id: int
    driver_id: int
    vehicle_id: int
    departure_at: datetime
    origin_address: str
    origin_name: str
    destination_address: str
    destination_name: str
    estimated_distance_km: Optional[float]
    estimated_duration_minutes: Optional[int]
    total_seats: int
    available_seats: int
    booked_seats: int
    price_per_seat: int
    wait_time_minutes: int
    notes: Optional[str]
    status: str
    is_recurring: bool
    is_recurring_instance: bool
    parent_ride_id: Optional[int]
    pickup_points: list[PickupPointResponse] = Field(default_factory=list)
    created_at: datetime

    model_config = {"from_attributes": True}


class RideCreateResponse(BaseModel):
    ride: RideResponse
    recurring_rides: list[RideResponse] = Field(default_factory=list)


class AffectedBooking(BaseModel):
    booking_id: int
    passenger_id: int
    seats: int


class RideCancelResponse(BaseModel):
    ride_id: int
    status: str
    affected_bookings: list[AffectedBooking]


class RecurringCancelResponse(BaseModel):
    parent_ride_id: int
    cancelled_ride_ids: list[int]
    affected_bookings: list[AffectedBooking]


class RideSearch(BaseModel):
    """Passenger-side ride discovery. Coordinates are matched within a radius."""

    departure_date: Optional[date] = None
    seats: int = Field(1, ge=1, le=4)
    from_lat: Optional[float] = Field(None, ge=-90, le=90)
    from_lng: Optional[float] = Field(None, ge=-180, le=180)
    to_lat: Optional[float] = Field(None, ge=-90, le=90)
    to_lng: Optional[float] = Field(None, ge=-180, le=180)
    radius_km: Optional[float] = Field(None, gt=0, le=50)
    max_price: Optional[int] = Field(None, gt=0)
    min_rating: Optional[float] = Field(None, ge=0, le=5)
    sort_by: Literal["departure_at", "price", "rating", "seats"] = "departure_at"
    sort_order: Literal["asc", "desc"] = "asc"
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class RideMatchResponse(BaseModel):
    ride: RideResponse
    total_price: int
    driver_first_name: str
    driver_rating: float
    origin_distance_km: Optional[float] = None
    destination_distance_km: Optional[float] = None


class RideSearchResponse(BaseModel):
    rides: list[RideMatchResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class RidePassenger(BaseModel):
    booking_id: int
    passenger_id: int
    first_name: str
    last_name: str
    phone: Optional[str]
    seats: int
    pickup_point_id: Optional[int]
    booked_at: datetime
