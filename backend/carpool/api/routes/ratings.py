"""
Rating endpoints.
"""

from fastapi import APIRouter, Depends, status

from carpool.api.deps import get_rating_service
from carpool.core.security import get_current_user_id
from carpool.schemas.rating import RatingCreate, RatingResponse
from carpool.services.rating_service import RatingService

router = APIRouter(prefix="/ratings", tags=["Ratings"])


@router.post("/", response_model=RatingResponse, status_code=status.HTTP_201_CREATED)
async def rate_booking(
    rating_data: RatingCreate,
    user_id: int = Depends(get_current_user_id),
    ratings: RatingService = Depends(get_rating_service),
):
    """Rate the other party of a completed booking. One rating per booking and rater."""
    return await ratings.rate_booking(user_id, rating_data)


@router.get("/users/{user_id}", response_model=list[RatingResponse])
async def list_user_ratings(
    user_id: int,
    ratings: RatingService = Depends(get_rating_service),
):
    return await ratings.list_user_ratings(user_id)
