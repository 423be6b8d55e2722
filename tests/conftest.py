"""
tests/conftest.py
Shared fixtures: a fresh SQLite schema per test, an in-memory Redis stand-in,
a recording notification publisher, and seeded users / services / bookings.
"""

import os
import tempfile
import uuid
from datetime import timedelta
from decimal import Decimal

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_webhook_secret")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="seva-uploads-"))

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine, get_db
from config.redis_client import get_redis
from main import app
from services.notification.events import NotificationEvent, get_event_publisher
from shared.models.models import (
    AdminRole,
    Booking,
    BookingStatus,
    NotificationSettings,
    Service,
    User,
    UserRole,
)
from shared.utils.helpers import generate_booking_number, utcnow
from shared.utils.resilience import circuit_breaker_manager
from shared.utils.security import create_access_token, hash_password

TEST_PASSWORD = "Password@123"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ── Fakes ──────────────────────────────────────────────────────────────────────

class FakeRedis:
    """The subset of redis.asyncio used by the API (deny-list + cache)."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def delete(self, key):
        self.store.pop(key, None)


class RecordingPublisher:
    def __init__(self):
        self.events: list[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)


# ── Infrastructure ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    circuit_breaker_manager.reset_all()
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def client(fake_redis, publisher):
    async def override_get_db():
        async with AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_event_publisher] = lambda: publisher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
        email=user.email,
    )
    return {"Authorization": f"Bearer {token}"}


# ── Data Builders ──────────────────────────────────────────────────────────────

async def make_user(db, role: UserRole, **overrides) -> User:
    suffix = uuid.uuid4().hex[:8]
    fields = dict(
        email=f"{role.value}-{suffix}@example.com",
        phone_number=f"+9198{int(suffix, 16) % 10**8:08d}",
        full_name=f"Test {role.value.title()} {suffix}",
        password_hash=_PASSWORD_HASH,
        role=role,
        is_active=True,
        is_verified=True,
    )
    fields.update(overrides)
    user = User(**fields)
    db.add(user)
    await db.flush()
    db.add(NotificationSettings(user_id=user.id))
    await db.commit()
    return user


async def make_booking(db, resident: User, service: Service, **overrides) -> Booking:
    fields = dict(
        booking_number=generate_booking_number(),
        resident_id=resident.id,
        service_id=service.id,
        scheduled_date=utcnow().date() + timedelta(days=2),
        scheduled_time="10:00",
        estimated_duration=service.duration_minutes,
        status=BookingStatus.PENDING,
        address={"flat_number": "A-101", "society": "Green Meadows"},
        base_price=service.base_price,
        additional_charges=Decimal("0.00"),
        discount=Decimal("0.00"),
        check_in_otp="123456",
        timeline=[],
        before_images=[],
        after_images=[],
    )
    fields.update(overrides)
    booking = Booking(**fields)
    booking.recompute_total()
    db.add(booking)
    await db.commit()
    return booking


# ── Users ──────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def resident_user(db) -> User:
    return await make_user(db, UserRole.RESIDENT, full_name="Asha Resident")


@pytest_asyncio.fixture
async def other_resident(db) -> User:
    return await make_user(db, UserRole.RESIDENT)


@pytest_asyncio.fixture
async def sevak_user(db) -> User:
    return await make_user(db, UserRole.SEVAK, full_name="Ravi Sevak")


@pytest_asyncio.fixture
async def second_sevak(db) -> User:
    return await make_user(db, UserRole.SEVAK, full_name="Kiran Sevak")


@pytest_asyncio.fixture
async def vendor_user(db) -> User:
    return await make_user(db, UserRole.VENDOR)


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, UserRole.ADMIN, admin_role=AdminRole.SUPER_ADMIN)


@pytest_asyncio.fixture
async def finance_admin(db) -> User:
    return await make_user(db, UserRole.ADMIN, admin_role=AdminRole.FINANCE)


@pytest_asyncio.fixture
async def support_admin(db) -> User:
    return await make_user(db, UserRole.ADMIN, admin_role=AdminRole.SUPPORT)


# ── Catalog / Bookings ─────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def service(db) -> Service:
    svc = Service(
        name="Tap Repair & Installation",
        description="Fix leaking taps",
        category="Plumbing",
        base_price=Decimal("500.00"),
        duration_minutes=60,
    )
    db.add(svc)
    await db.commit()
    return svc


@pytest_asyncio.fixture
async def booking(db, resident_user, service) -> Booking:
    return await make_booking(db, resident_user, service)
