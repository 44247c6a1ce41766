"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    ride_id: int
    seats: int = Field(default=1, gt=0, le=10)
    pickup_point_id: Optional[int] = None


class BookingCancel(BaseModel):
    reason: str = Field("", max_length=500)


class BookingStart(BaseModel):
    verification_code: str = Field(..., min_length=4, max_length=16)


class BookingResponse(BaseModel):
    id: int
    ride_id: int
    passenger_id: int
    driver_id: int
    pickup_point_id: Optional[int]
    seats: int
    total_amount: int
    status: str
    cancellation_reason: Optional[str] = None
    cancellation_source: Optional[str] = None
    is_late_cancellation: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class VerificationCodeResponse(BaseModel):
    verification_code: str
    expires_at: datetime
