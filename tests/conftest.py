"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, fakeredis in place of
Redis, an httpx client bound to the app, and a small marketplace
(customer, providers, an agency with internal and external members).
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

_TEST_DIR = tempfile.mkdtemp(prefix="scheduling-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/test.db"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ["APP_ENV"] = "test"

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from services.realtime.notifier import Notifier, SubscriberRegistry
from shared.middleware.auth import Principal
from shared.models.models import (
    Agency,
    AgencyMember,
    AgencyMemberRole,
    AgencyMemberService,
    AgencyService,
    AgencyStatus,
    Booking,
    BookingStatus,
    ProviderProfile,
    ProviderService,
    RequestStatus,
    ResourceType,
    ServiceRequest,
    ServiceType,
    User,
    UserRole,
)
from shared.types import TimeWindow
from shared.utils.security import create_access_token

# Origin of the 2024-06-01 scheduling scenarios
DAY = datetime(2024, 6, 1, tzinfo=timezone.utc)
NYC = (40.7128, -74.0060)


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user_id=str(user.id), role=user.role.value, email=user.email)
    return {"Authorization": f"Bearer {token}"}


def principal(user: User) -> Principal:
    return Principal.from_user(user)


def window(hour: int, minute: int = 0, minutes: int = 60) -> TimeWindow:
    """A window on DAY starting at hour:minute UTC."""
    return TimeWindow.from_duration(DAY.replace(hour=hour, minute=minute), minutes)


def window_json(w: TimeWindow) -> dict:
    return {"start": w.start.isoformat(), "end": w.end.isoformat()}


async def run(operation, *args, **kwargs):
    """Run a core operation in its own session, as a request handler would."""
    async with AsyncSessionLocal() as session:
        return await operation(session, *args, **kwargs)


async def fetch(model, obj_id):
    """Fresh read of one row, bypassing any session's identity map."""
    async with AsyncSessionLocal() as session:
        return await session.get(model, obj_id)


async def make_user(db, role: UserRole = UserRole.USER, name: str = None) -> User:
    suffix = uuid.uuid4().hex[:8]
    user = User(
        id=uuid.uuid4(),
        email=f"{suffix}@example.com",
        name=name or f"User {suffix}",
        role=role,
    )
    db.add(user)
    await db.commit()
    return user


async def make_provider(
    db,
    service_type: ServiceType,
    latitude: float = NYC[0],
    longitude: float = NYC[1],
    name: str = None,
    verified: bool = True,
    available: bool = True,
    hourly_rate: Decimal = Decimal("50.00"),
) -> ProviderProfile:
    user = await make_user(db, UserRole.PROVIDER, name)
    profile = ProviderProfile(
        id=uuid.uuid4(),
        user_id=user.id,
        latitude=latitude,
        longitude=longitude,
        is_available=available,
        verified_at=DAY - timedelta(days=30) if verified else None,
        services=[ProviderService(service_type_id=service_type.id, hourly_rate=hourly_rate)],
    )
    db.add(profile)
    await db.commit()
    await db.refresh(profile, ["user"])
    return profile


async def make_request(
    db,
    requester: User,
    service_type: ServiceType,
    status: RequestStatus = RequestStatus.PENDING,
    provider: ProviderProfile = None,
    member: AgencyMember = None,
) -> ServiceRequest:
    request = ServiceRequest(
        id=uuid.uuid4(),
        requester_user_id=requester.id,
        service_type_id=service_type.id,
        status=status,
        latitude=NYC[0],
        longitude=NYC[1],
        assigned_provider_id=provider.id if provider else None,
        assigned_agency_id=member.agency_id if member else None,
        assigned_agency_member_id=member.id if member else None,
    )
    db.add(request)
    await db.commit()
    return request


async def make_booking(
    db,
    request: ServiceRequest,
    resource_id: uuid.UUID,
    w: TimeWindow,
    resource_type: ResourceType = ResourceType.INDIVIDUAL,
    status: BookingStatus = BookingStatus.SCHEDULED,
) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request.id,
        service_type_id=request.service_type_id,
        start_time=w.start,
        end_time=w.end,
        estimated_duration_minutes=w.duration_minutes,
        status=status,
    )
    db.add(booking)
    await db.commit()
    return booking


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def schema():
    """Fresh tables for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db(schema):
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def notifier() -> Notifier:
    """The app's notifier, reset so subscribers don't leak between tests."""
    app.state.notifier = Notifier(SubscriberRegistry(queue_size=50))
    return app.state.notifier


@pytest_asyncio.fixture
async def client(schema, redis, notifier):
    app.dependency_overrides[get_redis] = lambda: redis
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Marketplace ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, UserRole.USER, "Casey Customer")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, UserRole.USER, "Riley Neighbour")


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, UserRole.ADMIN, "Alex Admin")


@pytest_asyncio.fixture
async def service_type(db) -> ServiceType:
    service = ServiceType(
        id=uuid.uuid4(),
        name="Plumbing",
        slug="plumbing",
        default_duration_minutes=60,
    )
    db.add(service)
    await db.commit()
    return service


@pytest_asyncio.fixture
async def other_service_type(db) -> ServiceType:
    service = ServiceType(
        id=uuid.uuid4(),
        name="Gardening",
        slug="gardening",
        default_duration_minutes=120,
    )
    db.add(service)
    await db.commit()
    return service


@pytest_asyncio.fixture
async def provider_profile(db, service_type) -> ProviderProfile:
    """Verified, available plumber right at the NYC reference point."""
    return await make_provider(db, service_type, name="Pat Plumber")


@pytest_asyncio.fixture
async def provider_user(provider_profile) -> User:
    return provider_profile.user


@pytest_asyncio.fixture
async def second_provider(db, service_type) -> ProviderProfile:
    return await make_provider(db, service_type, 40.7218, -74.0060, name="Sam Second")


@pytest_asyncio.fixture
async def agency_owner(db) -> User:
    return await make_user(db, UserRole.PROVIDER, "Olive Owner")


@pytest_asyncio.fixture
async def agency(db, agency_owner, service_type) -> Agency:
    agency = Agency(
        id=uuid.uuid4(),
        name="Downtown Fixers",
        owner_id=agency_owner.id,
        latitude=40.7300,
        longitude=-74.0060,
        status=AgencyStatus.VERIFIED,
        verified_at=DAY - timedelta(days=60),
        services=[AgencyService(service_type_id=service_type.id, hourly_rate=Decimal("70.00"))],
    )
    db.add(agency)
    await db.commit()
    return agency


@pytest_asyncio.fixture
async def internal_member(db, agency, service_type) -> AgencyMember:
    member_user = await make_user(db, UserRole.PROVIDER, "Ivy Internal")
    member = AgencyMember(
        id=uuid.uuid4(),
        agency_id=agency.id,
        user=member_user,
        role=AgencyMemberRole.PROVIDER,
        services=[AgencyMemberService(service_type_id=service_type.id)],
    )
    db.add(member)
    await db.commit()
    return member


@pytest_asyncio.fixture
async def external_member(db, agency, service_type) -> AgencyMember:
    member = AgencyMember(
        id=uuid.uuid4(),
        agency_id=agency.id,
        is_external=True,
        external_name="Eddie External",
        external_phone="+15550100",
        role=AgencyMemberRole.PROVIDER,
        services=[AgencyMemberService(service_type_id=service_type.id)],
    )
    db.add(member)
    await db.commit()
    return member
