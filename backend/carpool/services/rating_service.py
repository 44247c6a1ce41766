"""
Ratings between the two parties of a completed booking.

The rated user's average is not touched here: the rating's change record
drives an idempotent recomputation in the notification pipeline.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from carpool.core.logging import get_logger
from carpool.models.booking import Booking, BookingStatus
from carpool.models.rating import Rating, RatingType
from carpool.notifications.change_events import ChangeKind
from carpool.schemas.rating import RatingCreate
from carpool.services.cache_service import CacheService
from carpool.services.change_feed import record_change

logger = get_logger(__name__)


class RatingService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cache: CacheService):
        self.session_factory = session_factory
        self.cache = cache

    async def rate_booking(self, rater_id: int, data: RatingCreate) -> Rating:
        async with self.session_factory() as db:
            async with db.begin():
                booking = await db.get(Booking, data.booking_id)
                if not booking:
                    raise NotFoundError("Booking not found", code="BOOKING_NOT_FOUND")

                if rater_id == booking.passenger_id:
                    rated_user_id = booking.driver_id
                    rating_type = RatingType.PASSENGER_TO_DRIVER
                elif rater_id == booking.driver_id:
                    rated_user_id = booking.passenger_id
                    rating_type = RatingType.DRIVER_TO_PASSENGER
                else:
                    raise ForbiddenError("Only the booking's participants can rate it", code="FORBIDDEN")

                if booking.status != BookingStatus.COMPLETED:
                    raise BadRequestError(
                        "Only completed bookings can be rated", code="BOOKING_NOT_COMPLETED"
                    )

                existing = await db.execute(
                    select(Rating.id).where(
                        Rating.booking_id == booking.id, Rating.rater_id == rater_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise ConflictError("You have already rated this booking", code="RATING_EXISTS")

                rating = Rating(
                    booking_id=booking.id,
                    rater_id=rater_id,
                    rated_user_id=rated_user_id,
                    score=data.score,
                    comment=data.comment,
                    rating_type=rating_type,
                )
                db.add(rating)
                try:
                    await db.flush()
                except IntegrityError as e:
                    raise ConflictError(
                        "You have already rated this booking", code="RATING_EXISTS"
                    ) from e
                await record_change(db, rating, ChangeKind.CREATED)

        logger.info(
            "rating_created",
            rating_id=rating.id,
            booking_id=rating.booking_id,
            rated_user_id=rated_user_id,
            score=rating.score,
        )
        await self.cache.invalidate_entity(
            "rating", rated_user_id=rated_user_id, booking_id=rating.booking_id
        )
        return rating

    async def list_user_ratings(self, user_id: int) -> list[Rating]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Rating)
                .where(Rating.rated_user_id == user_id)
                .order_by(Rating.created_at.desc(), Rating.id.desc())
            )
            return list(result.scalars().all())
