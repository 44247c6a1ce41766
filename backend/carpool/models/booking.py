"""
Booking model representing a passenger's reservation of seats on a ride.

Key design decisions:
- Partial unique index on (ride_id, passenger_id) for non-cancelled rows
  prevents duplicate active bookings even under concurrent requests
- Status field allows cancellation without deleting records
- driver_id is denormalized so either party can be resolved without a join
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Index, CheckConstraint, text

from carpool.db.base import Base, SnapshotMixin, TimestampMixin, UTCDateTime


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    ACTIVE = (PENDING, CONFIRMED)
    SEAT_HOLDING = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED)
    TERMINAL = (COMPLETED, CANCELLED, NO_SHOW)


class CancellationSource:
    PASSENGER = "passenger"
    DRIVER = "driver"
    RIDE_CANCELLED = "ride_cancelled"


class Booking(Base, TimestampMixin, SnapshotMixin):
    __tablename__ = "bookings"
    __entity_type__ = "booking"

    id = Column(Integer, primary_key=True, index=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False, index=True)
    passenger_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    pickup_point_id = Column(Integer, ForeignKey("pickup_points.id", ondelete="SET NULL"), nullable=True)
    seats = Column(Integer, nullable=False, default=1)
    price_per_seat = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING)

    verification_code = Column(String(16), nullable=False)
    verification_expires_at = Column(UTCDateTime(), nullable=False)

    confirmed_at = Column(UTCDateTime(), nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    no_show_at = Column(UTCDateTime(), nullable=True)

    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancellation_source = Column(String(20), nullable=True)
    is_late_cancellation = Column(Boolean, nullable=False, default=False)


    __table_args__ = (
        CheckConstraint("seats > 0", name="check_booking_seats_positive"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show')",
            name="check_booking_status",
        ),
        # One non-cancelled booking per passenger per ride
        Index(
            "uq_active_booking_per_passenger",
            "ride_id",
            "passenger_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_bookings_ride_status", "ride_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, ride={self.ride_id}, passenger={self.passenger_id}, status={self.status})>"
