"""
tests/conftest.py
Shared fixtures: an in-memory SQLite database per test, a fake Redis,
an httpx client bound to the app, and a handful of seeded principals.
"""

import os
import uuid

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "testing")
os.environ["AUTO_ASSIGN_ON_READ"] = "false"
os.environ["RESEND_API_KEY"] = ""

from datetime import date, time, timedelta
from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    ApprovalStatus,
    Booking,
    BookingStatus,
    Provider,
    Service,
    User,
    UserRole,
    utcnow,
)
from shared.utils.security import create_access_token, hash_password
from tasks import notification_tasks

TEST_PASSWORD = "password123"
PASSWORD_HASH = hash_password(TEST_PASSWORD)


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(test_engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(test_engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    fake = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield fake
    await fake.aclose()


@pytest_asyncio.fixture
async def client(db: AsyncSession, redis):
    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_redis] = lambda: redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Capture assignment emails instead of queueing them on Celery."""
    sent = []

    def _capture(payload):
        sent.append(payload)
        return True

    monkeypatch.setattr(notification_tasks, "queue_assignment_email", _capture)
    return sent


# ── Principals ────────────────────────────────────────────────

async def make_user(db: AsyncSession, email: str, name: str, role: UserRole, phone=None) -> User:
    user = User(
        email=email,
        name=name,
        phone=phone,
        role=role,
        password_hash=PASSWORD_HASH,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_provider(
    db: AsyncSession,
    email: str,
    skill: str = "Electrician",
    area: str = "Cidco Colony",
    rating: str = "4.5",
    approval_status=ApprovalStatus.ACTIVE,
    is_active: bool = True,
    is_deleted=False,
    name: str = "Test Provider",
) -> Provider:
    user = await make_user(db, email, name, UserRole.PROVIDER, phone="9876500000")
    provider = Provider(
        user_id=user.id,
        skill=skill,
        area=area,
        rating=Decimal(rating),
        approval_status=approval_status,
        is_active=is_active,
        is_deleted=is_deleted,
    )
    db.add(provider)
    await db.commit()
    await db.refresh(provider)
    return provider


async def make_booking(
    db: AsyncSession,
    customer: User,
    service: Service,
    status: BookingStatus = BookingStatus.PENDING,
    provider: Provider = None,
    area: str = "Cidco",
    age_seconds: int = 0,
    number: str = None,
) -> Booking:
    booking = Booking(
        booking_number=number or f"LS-T-{uuid.uuid4().hex[:12].upper()}",
        customer_id=customer.id,
        service_id=service.id,
        provider_id=provider.id if provider else None,
        description="Fan not working",
        address="12 Main Road",
        area=area,
        scheduled_date=date.today() + timedelta(days=1),
        scheduled_time=time(10, 30),
        amount=service.base_price,
        status=status,
        created_at=utcnow() - timedelta(seconds=age_seconds),
    )
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    return booking


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await make_user(db, "customer@demo.com", "Test Customer", UserRole.CUSTOMER, "9876543210")


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await make_user(db, "admin@demo.com", "Test Admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def provider(db: AsyncSession) -> Provider:
    return await make_provider(db, "provider@demo.com")


@pytest_asyncio.fixture
async def provider_user(db: AsyncSession, provider: Provider) -> User:
    return await db.get(User, provider.user_id)


@pytest_asyncio.fixture
async def service(db: AsyncSession) -> Service:
    svc = Service(
        name="Electrician",
        description="Wiring and fittings",
        base_price=Decimal("250.00"),
        max_price=Decimal("2000.00"),
    )
    db.add(svc)
    await db.commit()
    await db.refresh(svc)
    return svc
