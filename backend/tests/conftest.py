"""
Pytest fixtures for test database, services, client, and authentication.

Each test gets its own SQLite file (aiosqlite) with the schema created from
the models, a fixed clock, and an in-memory transport that records every
envelope the notification pipeline publishes.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from carpool.container import ServiceContainer, build_container
from carpool.core.config import Settings
from carpool.core.security import create_access_token
from carpool.db.base import Base
from carpool.db.session import create_engine, create_session_factory
from carpool.main import app
from carpool.models.user import DriverStatus, User
from carpool.models.vehicle import Vehicle, VehicleStatus
from carpool.notifications.envelopes import Envelope
from carpool.notifications.transport import NotificationTransport
from carpool.schemas.ride import RideCreate

# Monday morning; the default test ride leaves two hours later
FIXED_NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
DEPARTURE = FIXED_NOW + timedelta(hours=2)


class FixedClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingTransport(NotificationTransport):
    """In-memory transport with the same duplicate semantics as the Redis queue."""

    def __init__(self):
        self.sent: list[Envelope] = []
        self.seen: set[str] = set()
        self.fail = False

    async def send(self, envelope: Envelope) -> bool:
        if self.fail:
            raise ConnectionError("queue unavailable")
        if envelope.correlation_id in self.seen:
            return False
        self.seen.add(envelope.correlation_id)
        self.sent.append(envelope)
        return True

    def templates(self) -> list[str]:
        return [e.payload.template for e in self.sent]

    def to(self, user_id: int) -> list[Envelope]:
        return [e for e in self.sent if e.recipient.user_id == user_id]


def ride_payload(**overrides) -> dict:
    payload = {
        "departure_at": DEPARTURE.isoformat(),
        "origin": {"address": "North Campus Gate", "lat": 52.2053, "lng": 0.1218},
        "destination": {"address": "Central Station", "lat": 52.1943, "lng": 0.1373},
        "seats": 3,
        "price_per_seat": 500,
    }
    payload.update(overrides)
    return payload


def ride_create(**overrides) -> RideCreate:
    return RideCreate(**ride_payload(**overrides))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'carpool_test.db'}",
        REDIS_ENABLED=False,
        NOTIFICATION_QUEUE_NAME="",
        CHANGE_FEED_POLL_SECONDS=0,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture(scope="function")
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables, yield the engine, then dispose it."""
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def container(engine, settings, transport, clock) -> ServiceContainer:
    return build_container(
        settings,
        engine,
        create_session_factory(engine),
        transport=transport,
        clock=clock,
    )


async def add_user(container: ServiceContainer, email: str, **fields) -> User:
    values = {"first_name": email.split("@")[0].title(), "is_verified": True}
    values.update(fields)
    async with container.session_factory() as db:
        user = User(email=email, **values)
        db.add(user)
        await db.commit()
        await db.refresh(user)
    return user


async def add_vehicle(
    container: ServiceContainer,
    owner_id: int,
    plate_number: str,
    capacity: int = 4,
    verification_status: str = VehicleStatus.APPROVED,
    is_primary: bool = True,
) -> Vehicle:
    async with container.session_factory() as db:
        vehicle = Vehicle(
            owner_id=owner_id,
            make="Toyota",
            model="Corolla",
            color="Blue",
            plate_number=plate_number,
            capacity=capacity,
            verification_status=verification_status,
            is_primary=is_primary,
        )
        db.add(vehicle)
        await db.commit()
        await db.refresh(vehicle)
    return vehicle


@pytest_asyncio.fixture
async def driver(container: ServiceContainer) -> User:
    """Verified driver with an approved four-seat primary vehicle."""
    user = await add_user(
        container,
        "dana.driver@example.edu",
        is_driver=True,
        driver_status=DriverStatus.VERIFIED,
    )
    await add_vehicle(container, user.id, "CAM 123")
    return user


@pytest_asyncio.fixture
async def passenger(container: ServiceContainer) -> User:
    return await add_user(container, "pat.passenger@example.edu")


@pytest_asyncio.fixture
async def other_passenger(container: ServiceContainer) -> User:
    return await add_user(container, "quinn.passenger@example.edu")


@pytest_asyncio.fixture
async def ride(container: ServiceContainer, driver: User):
    """Three-seat ride departing two hours after the fixed clock."""
    created, _ = await container.rides.create_ride(driver.id, ride_create())
    return created


@pytest_asyncio.fixture(scope="function")
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app wired to the test container."""
    # ASGITransport does not run the lifespan, so the container is set directly
    previous: Optional[ServiceContainer] = getattr(app.state, "container", None)
    app.state.container = container

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.container = previous


def auth_headers(user_id: int) -> dict:
    """Authorization headers with a Bearer token for ``user_id``."""
    token = create_access_token(data={"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}
