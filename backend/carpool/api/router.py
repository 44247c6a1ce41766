"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from carpool.api.routes import rides, bookings, ratings, users

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(rides.router)
api_router.include_router(bookings.router)
api_router.include_router(ratings.router)
api_router.include_router(users.router)
