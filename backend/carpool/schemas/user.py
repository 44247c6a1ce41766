"""
Pydantic schemas for user-related responses.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    is_active: bool
    is_verified: bool
    is_driver: bool
    driver_status: str
    driver_rejection_reason: Optional[str] = None
    average_rating: float
    total_ratings: int
    created_at: datetime

    model_config = {"from_attributes": True}


class VehicleResponse(BaseModel):
    id: int
    make: str
    model: str
    color: Optional[str]
    plate_number: str
    capacity: int
    verification_status: str
    is_primary: bool

    model_config = {"from_attributes": True}
