"""
Pydantic schemas for ratings.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class RatingCreate(BaseModel):
    booking_id: int
    score: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class RatingResponse(BaseModel):
    id: int
    booking_id: int
    rater_id: int
    rated_user_id: int
    score: int
    comment: Optional[str]
    rating_type: str
    created_at: datetime

    model_config = {"from_attributes": True}
