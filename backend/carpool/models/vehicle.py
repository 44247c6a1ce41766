"""
Vehicle model. A driver's ride offers are capped by the vehicle's capacity.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from carpool.db.base import Base, SnapshotMixin, TimestampMixin


class VehicleStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Vehicle(Base, TimestampMixin, SnapshotMixin):
    __tablename__ = "vehicles"
    __entity_type__ = "vehicle"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    color = Column(String(50), nullable=True)
    plate_number = Column(String(20), nullable=False, unique=True)
    capacity = Column(Integer, nullable=False)
    verification_status = Column(String(20), nullable=False, default=VehicleStatus.PENDING)
    is_primary = Column(Boolean, nullable=False, default=False)

    owner = relationship("User", back_populates="vehicles")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="check_vehicle_capacity_positive"),
    )

    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id}, plate={self.plate_number}, capacity={self.capacity})>"
