"""
User model: passengers and drivers of the carpool community.

Accounts are provisioned by the identity service; this table keeps the fields
the booking core reads (verification flags, driver approval, rating aggregate).
"""

from sqlalchemy import Column, Integer, String, Boolean, Float
from sqlalchemy.orm import relationship

from carpool.db.base import Base, SnapshotMixin, TimestampMixin


class DriverStatus:
    NONE = "none"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class User(Base, TimestampMixin, SnapshotMixin):
    __tablename__ = "users"
    __entity_type__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    phone = Column(String(32), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    is_driver = Column(Boolean, default=False, nullable=False)
    driver_status = Column(String(20), nullable=False, default=DriverStatus.NONE)
    driver_rejection_reason = Column(String(500), nullable=True)

    average_rating = Column(Float, nullable=False, default=0.0)
    total_ratings = Column(Integer, nullable=False, default=0)

    vehicles = relationship("Vehicle", back_populates="owner", lazy="selectin")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
