"""Root conftest - test infrastructure for all backend tests.

Provides:
- In-memory SQLite engine (aiosqlite) with a fresh schema per test
- Frozen clock and an isolated lock registry
- User and plan catalog fixtures
- State machine wired to the test clock
- API client with dependency overrides
- Autouse mock for outbound email
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# ─────────────────────────────────────────────────────────────────────────────
# Engine (one shared in-memory connection)
# ─────────────────────────────────────────────────────────────────────────────

TEST_ENGINE = create_async_engine(
    "sqlite+aiosqlite://",
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)

TestSessionMaker = async_sessionmaker(TEST_ENGINE, class_=AsyncSession, expire_on_commit=False)

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def session_maker():
    return TestSessionMaker


@pytest.fixture
async def db_session():
    """Session on a freshly created schema, dropped after the test."""
    import app.models  # noqa: F401  registers every table

    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    async with TestSessionMaker() as session:
        yield session

    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def lock_registry():
    from app.core.locks import KeyedLockRegistry

    return KeyedLockRegistry(default_timeout=1.0)


@pytest.fixture
async def plans(db_session: AsyncSession):
    """The seeded plan catalog, keyed by plan id."""
    from app.domain.plan_operations import plan_ops

    seeded = await plan_ops.seed(db_session)
    await db_session.commit()
    return {plan.id: plan for plan in seeded}


@pytest.fixture
async def test_user(db_session: AsyncSession):
    from app.domain.user_operations import user_ops

    user = await user_ops.get_or_create(
        db_session, "user_test_1", email="ada@example.com", display_name="Ada"
    )
    await db_session.commit()
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession):
    from app.domain.user_operations import user_ops

    user = await user_ops.get_or_create(db_session, "user_test_2", email="grace@example.com")
    await db_session.commit()
    return user


@pytest.fixture
def gateway():
    """Stand-in PaymentGateway with async provider calls mocked."""
    mock = MagicMock()
    mock.name = "stripe"
    mock.cancel_recurring = AsyncMock(return_value=None)
    mock.change_recurring_plan = AsyncMock(return_value=None)
    mock.fetch_payment = AsyncMock()
    mock.price_handle = MagicMock(side_effect=lambda plan: plan.stripe_price_id)
    return mock


@pytest.fixture
def notifier_mock():
    from app.services.email.notifier import Notifier

    mock = MagicMock(spec=Notifier)
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def machine(clock, notifier_mock, lock_registry, gateway):
    from app.services.subscription_machine import SubscriptionStateMachine

    return SubscriptionStateMachine(
        clock=clock,
        notifier=notifier_mock,
        locks=lock_registry,
        gateway_lookup=lambda name: gateway,
        lock_timeout=1.0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def api_client(db_session: AsyncSession, test_user):
    """HTTP client that bypasses JWT auth and uses the test session.

    Overrides: get_current_user, get_db
    """
    from app.api.deps.auth import get_current_user
    from app.core.database import get_db
    from app.main import app
    from app.models.user import User

    # Detached copy: a rollback inside a request must not expire the caller
    caller = User(id=test_user.id, email=test_user.email, display_name=test_user.display_name)
    app.dependency_overrides[get_current_user] = lambda: caller

    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: never send real email from tests."""
    with patch("app.services.email.notifier.postmark_service", new_callable=MagicMock) as mock_pm:
        mock_pm.send = AsyncMock(return_value=True)
        yield {"postmark": mock_pm}
