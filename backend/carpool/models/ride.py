"""
Ride model with seat inventory tracking.

Key design decisions:
- `available_seats` and `booked_seats` are denormalized counters; together they
  always add up to `total_seats` (enforced by a CHECK constraint)
- `version` column enables compare-and-swap writes for concurrent booking
- Recurring schedules are stored as a parent ride plus generated instances
  that point back to it via `parent_ride_id`
"""

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Date, ForeignKey, Index, CheckConstraint, JSON,
)
from sqlalchemy.orm import relationship

from carpool.db.base import Base, SnapshotMixin, TimestampMixin, UTCDateTime


class RideStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    FULL = "full"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    BOOKABLE = (ACTIVE, FULL)
    TERMINAL = (COMPLETED, CANCELLED)


class Ride(Base, TimestampMixin, SnapshotMixin):
    __tablename__ = "rides"
    __entity_type__ = "ride"

    id = Column(Integer, primary_key=True, index=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    departure_at = Column(UTCDateTime(), nullable=False)

    origin_address = Column(String(255), nullable=False)
    origin_name = Column(String(255), nullable=False)
    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    destination_address = Column(String(255), nullable=False)
    destination_name = Column(String(255), nullable=False)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_minutes = Column(Integer, nullable=True)

    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    booked_seats = Column(Integer, nullable=False, default=0)
    price_per_seat = Column(Integer, nullable=False)
    wait_time_minutes = Column(Integer, nullable=False, default=5)
    notes = Column(String(1000), nullable=True)
    status = Column(String(20), nullable=False, default=RideStatus.ACTIVE)

    # Recurrence
    is_recurring = Column(Boolean, nullable=False, default=False)
    is_recurring_instance = Column(Boolean, nullable=False, default=False)
    parent_ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True, index=True)
    recurring_days = Column(JSON, nullable=True)
    recurring_end_date = Column(Date, nullable=True)
    recurring_instance_count = Column(Integer, nullable=False, default=0)

    # Lifecycle
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    actual_duration_minutes = Column(Integer, nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    pickup_points = relationship(
        "PickupPoint",
        back_populates="ride",
        order_by="PickupPoint.order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="check_ride_available_non_negative"),
        CheckConstraint("booked_seats >= 0", name="check_ride_booked_non_negative"),
        CheckConstraint("total_seats > 0", name="check_ride_total_positive"),
        CheckConstraint(
            "available_seats + booked_seats = total_seats", name="check_ride_seat_conservation"
        ),
        # Overlap checks and driver dashboards filter by driver and departure
        Index("ix_rides_driver_departure", "driver_id", "departure_at"),
        Index("ix_rides_status_departure", "status", "departure_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Ride(id={self.id}, status={self.status}, "
            f"available={self.available_seats}/{self.total_seats})>"
        )


class PickupPoint(Base, TimestampMixin):
    __tablename__ = "pickup_points"

    id = Column(Integer, primary_key=True, index=True)
    ride_id = Column(Integer, ForeignKey("rides.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    estimated_offset_minutes = Column(Integer, nullable=False, default=0)
    order = Column(Integer, nullable=False)

    ride = relationship("Ride", back_populates="pickup_points")

    def __repr__(self) -> str:
        return f"<PickupPoint(id={self.id}, ride={self.ride_id}, order={self.order})>"
