"""
tests/conftest.py
Shared fixtures: SQLite schema per test, fakeredis, an ASGI client,
role users, a listing and a booking. Elasticsearch is disabled and
queued emails are captured instead of reaching Celery.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_rental.db"
os.environ["APP_ENV"] = "test"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ["RESEND_API_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["GOOGLE_MAPS_API_KEY"] = ""

from datetime import date, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from config import redis_client as redis_module  # noqa: E402
from config.database import AsyncSessionLocal, Base, engine  # noqa: E402
from main import app  # noqa: E402
from shared.models.models import (  # noqa: E402
    Booking,
    BookingStatus,
    Property,
    User,
    UserRole,
)
from shared.utils.security import create_access_token, hash_password  # noqa: E402

TEST_PASSWORD = "Password123!"
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


def auth_headers(user: User) -> dict:
    """Bearer header with a fresh access token for the user."""
    token, _ = create_access_token(str(user.id), UserRole(user.role).value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(autouse=True)
async def redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    redis_module.redis_client = client
    yield client
    await client.flushall()
    await client.aclose()
    redis_module.redis_client = None


@pytest.fixture(autouse=True)
def search_disabled(monkeypatch):
    """No Elasticsearch: index writes report failure, queries use the database."""
    get_client = AsyncMock(return_value=None)
    monkeypatch.setattr("services.search.router.get_es_client", get_client)
    return get_client


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Captures send_templated_email.delay(template, to, context) calls."""
    task = MagicMock()
    monkeypatch.setattr("services.notification.router.send_templated_email", task)
    return task.delay


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ── Domain Fixtures ───────────────────────────────────────────

async def make_user(db, email: str, role: UserRole = UserRole.USER, **overrides) -> User:
    user = User(
        email=email,
        password_hash=TEST_PASSWORD_HASH,
        first_name=overrides.pop("first_name", email.split("@")[0].title()),
        last_name=overrides.pop("last_name", "Tester"),
        role=role,
        is_verified=True,
        **overrides,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_property(db, owner: User, **overrides) -> Property:
    fields = {
        "title": "Marina Loft",
        "description": "Sea view loft close to the tram",
        "address": "Dubai Marina Walk",
        "city": "Dubai",
        "country": "UAE",
        "zip_code": "00000",
        "price": Decimal("200.00"),
        "bedrooms": 2,
        "bathrooms": 1,
        "size": 95.0,
        "images": [],
        "amenities": ["WiFi", "Pool"],
        "available": True,
        "latitude": 25.0805,
        "longitude": 55.1403,
    }
    fields.update(overrides)
    prop = Property(owner_id=owner.id, **fields)
    db.add(prop)
    await db.commit()
    await db.refresh(prop)
    return prop


async def make_booking(db, guest: User, prop: Property, **overrides) -> Booking:
    start = overrides.pop("start_date", date.today() + timedelta(days=10))
    nights = overrides.pop("nights", 3)
    booking = Booking(
        user_id=guest.id,
        property_id=prop.id,
        start_date=start,
        end_date=overrides.pop("end_date", start + timedelta(days=nights)),
        nights=nights,
        total_price=overrides.pop("total_price", prop.price * nights),
        status=overrides.pop("status", BookingStatus.PENDING),
        **overrides,
    )
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    return booking


@pytest_asyncio.fixture
async def user(db) -> User:
    return await make_user(db, "guest@example.com")


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await make_user(db, "other@example.com")


@pytest_asyncio.fixture
async def landlord_user(db) -> User:
    return await make_user(db, "landlord@example.com", UserRole.LANDLORD)


@pytest_asyncio.fixture
async def agent_user(db) -> User:
    return await make_user(db, "agent@example.com", UserRole.AGENT)


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, "admin@example.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def property_(db, landlord_user: User) -> Property:
    return await make_property(db, landlord_user)


@pytest_asyncio.fixture
async def booking(db, user: User, property_: Property) -> Booking:
    return await make_booking(db, user, property_)
