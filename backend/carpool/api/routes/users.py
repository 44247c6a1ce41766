"""
User endpoints: profiles and the driver application.
"""

from fastapi import APIRouter, Depends

from carpool.api.deps import get_user_service
from carpool.core.security import get_current_user_id
from carpool.schemas.user import UserResponse, VehicleResponse
from carpool.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(
    user_id: int = Depends(get_current_user_id),
    users: UserService = Depends(get_user_service),
):
    return await users.get_user(user_id)


@router.get("/me/vehicles", response_model=list[VehicleResponse])
async def list_my_vehicles(
    user_id: int = Depends(get_current_user_id),
    users: UserService = Depends(get_user_service),
):
    user = await users.get_user(user_id)
    return user.vehicles


@router.post("/me/driver-application", response_model=UserResponse)
async def apply_as_driver(
    user_id: int = Depends(get_current_user_id),
    users: UserService = Depends(get_user_service),
):
    """Submit the account for driver verification."""
    return await users.apply_as_driver(user_id)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    users: UserService = Depends(get_user_service),
):
    return await users.get_user(user_id)
