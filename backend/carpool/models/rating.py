"""
Rating left by one participant of a completed booking for the other.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint, CheckConstraint

from carpool.db.base import Base, SnapshotMixin, TimestampMixin


class RatingType:
    PASSENGER_TO_DRIVER = "passenger_to_driver"
    DRIVER_TO_PASSENGER = "driver_to_passenger"


class Rating(Base, TimestampMixin, SnapshotMixin):
    __tablename__ = "ratings"
    __entity_type__ = "rating"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    rater_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rated_user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    comment = Column(String(1000), nullable=True)
    rating_type = Column(String(30), nullable=False)

    __table_args__ = (
        UniqueConstraint("booking_id", "rater_id", name="uq_rating_booking_rater"),
        CheckConstraint("score BETWEEN 1 AND 5", name="check_rating_score_range"),
    )

    def __repr__(self) -> str:
        return f"<Rating(id={self.id}, booking={self.booking_id}, score={self.score})>"
