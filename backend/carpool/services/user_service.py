"""
Account state transitions owned by this service: email verification, the
driver approval workflow and vehicle registration.

Accounts themselves are provisioned by the identity service. Each transition
writes a change record so the welcome and driver-decision notifications go
out through the same pipeline as booking notifications.
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.core.errors import BadRequestError, ConflictError, NotFoundError
from carpool.core.logging import get_logger
from carpool.models.user import DriverStatus, User
from carpool.models.vehicle import Vehicle, VehicleStatus
from carpool.notifications.change_events import ChangeKind
from carpool.services.cache_service import CacheService
from carpool.services.change_feed import record_change

logger = get_logger(__name__)


class UserService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cache: CacheService):
        self.session_factory = session_factory
        self.cache = cache

    async def get_user(self, user_id: int) -> User:
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    async def verify_email(self, user_id: int) -> User:
        """Idempotent: verifying an already verified address changes nothing."""
        async with self.session_factory() as db:
            async with db.begin():
                user = await self._load(db, user_id)
                if user.is_verified:
                    return user
                before = user.snapshot()
                user.is_verified = True
                await record_change(db, user, ChangeKind.MODIFIED, before)

        logger.info("user_email_verified", user_id=user_id)
        await self.cache.invalidate_entity("user", user_id=user_id)
        return user

    async def apply_as_driver(self, user_id: int) -> User:
        return await self._set_driver_status(
            user_id,
            DriverStatus.PENDING,
            allowed_from=(DriverStatus.NONE, DriverStatus.REJECTED),
            is_driver=True,
            driver_rejection_reason=None,
        )

    async def approve_driver(self, user_id: int) -> User:
        return await self._set_driver_status(
            user_id, DriverStatus.VERIFIED, allowed_from=(DriverStatus.PENDING,)
        )

    async def reject_driver(self, user_id: int, reason: Optional[str] = None) -> User:
        return await self._set_driver_status(
            user_id,
            DriverStatus.REJECTED,
            allowed_from=(DriverStatus.PENDING,),
            driver_rejection_reason=reason,
        )

    async def _set_driver_status(
        self, user_id: int, new_status: str, allowed_from: tuple[str, ...], **fields
    ) -> User:
        async with self.session_factory() as db:
            async with db.begin():
                user = await self._load(db, user_id)
                if user.driver_status not in allowed_from:
                    raise BadRequestError(
                        f"Cannot move driver status from {user.driver_status} to {new_status}",
                        code="DRIVER_INVALID_STATUS",
                    )
                before = user.snapshot()
                user.driver_status = new_status
                for name, value in fields.items():
                    setattr(user, name, value)
                await record_change(db, user, ChangeKind.MODIFIED, before)

        logger.info("driver_status_changed", user_id=user_id, driver_status=new_status)
        await self.cache.invalidate_entity("user", user_id=user_id)
        return user

    async def register_vehicle(
        self,
        owner_id: int,
        make: str,
        model: str,
        plate_number: str,
        capacity: int,
        color: Optional[str] = None,
        is_primary: bool = False,
    ) -> Vehicle:
        async with self.session_factory() as db:
            async with db.begin():
                await self._load(db, owner_id)
                vehicle = Vehicle(
                    owner_id=owner_id,
                    make=make,
                    model=model,
                    color=color,
                    plate_number=plate_number.upper(),
                    capacity=capacity,
                    verification_status=VehicleStatus.PENDING,
                    is_primary=is_primary,
                )
                db.add(vehicle)
                try:
                    await db.flush()
                except IntegrityError as e:
                    raise ConflictError(
                        "A vehicle with this plate number is already registered",
                        code="VEHICLE_EXISTS",
                    ) from e
                await record_change(db, vehicle, ChangeKind.CREATED)

        logger.info("vehicle_registered", vehicle_id=vehicle.id, owner_id=owner_id)
        await self.cache.invalidate_entity("user", user_id=owner_id)
        return vehicle

    async def set_vehicle_status(self, vehicle_id: int, status: str) -> Vehicle:
        if status not in (VehicleStatus.APPROVED, VehicleStatus.REJECTED):
            raise BadRequestError(f"Unknown vehicle status {status}", code="VEHICLE_INVALID_STATUS")

        async with self.session_factory() as db:
            async with db.begin():
                vehicle = await db.get(Vehicle, vehicle_id)
                if not vehicle:
                    raise NotFoundError("Vehicle not found", code="VEHICLE_NOT_FOUND")
                before = vehicle.snapshot()
                vehicle.verification_status = status
                await record_change(db, vehicle, ChangeKind.MODIFIED, before)

        logger.info("vehicle_status_changed", vehicle_id=vehicle_id, status=status)
        await self.cache.invalidate_entity("user", user_id=vehicle.owner_id)
        return vehicle

    @staticmethod
    async def _load(db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user
