"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Each test gets its own file-backed SQLite database. The alerting store
commits per operation and relies on separate connections seeing each
other's writes, so tests use a real session factory rather than a single
rolled-back transaction.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alerts.dispatcher import NotificationDispatcher
from alerts.email import EmailResult, EmailTransport
from alerts.fanout import InMemoryFanout
from alerts.scheduler import HealthCheckScheduler, LocalDebounce, get_scheduler
from api.deps import get_current_user, get_db
from api.main import app
from db.models import utcnow
from db.session import Base

INACTIVE_ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-000000000000")
ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
SECOND_ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
THIRD_ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-000000000003")
MANAGER_ID = uuid.UUID("00000000-0000-0000-0000-000000000010")


class RecordingTransport(EmailTransport):
    """Email transport that records sends instead of calling a provider."""

    def __init__(self, fail_with: str | None = None, raise_error: bool = False):
        self.fail_with = fail_with
        self.raise_error = raise_error
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, html_body: str) -> EmailResult:
        self.sent.append({"to": to, "subject": subject, "html_body": html_body})
        if self.raise_error:
            raise ConnectionError("smtp relay unreachable")
        if self.fail_with:
            return EmailResult.failed(self.fail_with)
        return EmailResult.sent()


@pytest.fixture
async def test_engine(tmp_path):
    """Create a per-test SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stocksentry.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fanout():
    return InMemoryFanout(queue_size=10)


@pytest.fixture
def email_transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(fanout, email_transport):
    return NotificationDispatcher(fanout=fanout, email_transport=email_transport, cooldown_hours=24.0)


@pytest.fixture
def scheduler(session_factory, dispatcher):
    return HealthCheckScheduler(
        session_factory,
        dispatcher,
        interval_minutes=15,
        expiry_window_days=30,
        timeout_seconds=5.0,
        recipient_roles=["admin"],
        debounce=LocalDebounce(),
    )


@pytest.fixture
def mock_user():
    """Mock authenticated admin."""
    return {
        "sub": str(ADMIN_ID),
        "email": "admin@stocksentry.app",
        "role": "admin",
    }


@pytest.fixture
async def client(session_factory, mock_user, scheduler):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    def override_get_current_user():
        return mock_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Seed users and products covering every rule family."""
    from db.models import Product, User

    today = utcnow().date()

    users = [
        User(user_id=INACTIVE_ADMIN_ID, email="former@stocksentry.app", full_name="Former Admin", role="admin", is_active=False),
        User(user_id=ADMIN_ID, email="admin@stocksentry.app", full_name="Ada Admin", role="admin"),
        User(user_id=SECOND_ADMIN_ID, email="second@stocksentry.app", full_name="Second Admin", role="admin"),
        User(user_id=THIRD_ADMIN_ID, email="third@stocksentry.app", full_name="Third Admin", role="admin"),
        User(user_id=MANAGER_ID, email="manager@stocksentry.app", full_name="Store Manager", role="manager"),
    ]
    test_db.add_all(users)

    products = {
        "low": Product(sku="SKU-LOW", name="Amoxicillin 500mg", stock_quantity=30, reorder_level=80),
        "out": Product(sku="SKU-OUT", name="Insulin Pen", stock_quantity=0, reorder_level=20),
        "healthy": Product(sku="SKU-OK", name="Saline Solution", stock_quantity=200, reorder_level=20),
        "expiring": Product(
            sku="SKU-EXP",
            name="Vitamin D Drops",
            stock_quantity=100,
            reorder_level=10,
            expiry_date=today + timedelta(days=5),
        ),
    }
    test_db.add_all(products.values())
    await test_db.commit()

    return {"users": users, "products": products, "today": today}
