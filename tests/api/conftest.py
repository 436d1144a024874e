"""API test fixtures - unauthenticated clients and provider secrets.

Builds on root conftest fixtures (db_session, plans, test_user, api_client,
mock_external_services).
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

CRON_SECRET = "test-cron-secret"
RAZORPAY_WEBHOOK_SECRET = "test-razorpay-webhook-secret"


@pytest.fixture
async def anon_client(db_session: AsyncSession):
    """HTTP client with the test session but no auth override."""
    from app.core.database import get_db
    from app.main import app

    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers():
    """Configure the cron secret and return matching request headers."""
    from app.config import settings

    with patch.object(settings, "cron_secret", CRON_SECRET):
        yield {"X-Cron-Secret": CRON_SECRET}


@pytest.fixture
def razorpay_webhook_secret():
    from app.config import settings

    with patch.object(settings, "razorpay_webhook_secret", RAZORPAY_WEBHOOK_SECRET):
        yield RAZORPAY_WEBHOOK_SECRET
