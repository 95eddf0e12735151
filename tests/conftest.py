"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

# Set test environment before importing app
os.environ["ENVIRONMENT"] = "test"
os.environ["STORE_BACKEND"] = "database"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_claimease"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_claimease"
os.environ["STRIPE_STANDARD_PRICE_ID"] = "price_standard_test"
os.environ["STRIPE_PRO_PRICE_ID"] = "price_pro_test"
os.environ["OPENAI_API_KEY"] = "sk-test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from claimease.config import settings
from claimease.database import get_session
from claimease.main import app
from claimease.models import Account, PlanTier, utcnow
from claimease.services.auth import create_token
from claimease.services.magic_link import get_memory_store
from claimease.services.rate_limit import get_memory_rate_limiter
from claimease.services.resilience import openai_circuit, stripe_circuit


def make_openai_chat_response(content: str) -> MagicMock:
    """Create a mock OpenAI chat completion response.

    Usage:
        response = make_openai_chat_response("Test answer")
        mock_client.chat.completions.create = AsyncMock(return_value=response)
    """
    mock_message = MagicMock()
    mock_message.content = content

    mock_choice = MagicMock()
    mock_choice.message = mock_message
    mock_choice.finish_reason = "stop"

    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    mock_response.model = "gpt-4o-mini"
    return mock_response


def sign_stripe_payload(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for a raw payload."""
    timestamp = timestamp or int(time.time())
    secret = secret or settings.stripe_webhook_secret
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_checkout_event(
    event_id: str = "evt_test_1",
    session_id: str = "cs_test_1",
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
    metadata: dict[str, Any] | None = None,
    **session_fields: Any,
) -> dict[str, Any]:
    """A minimal Stripe checkout.session event."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "amount_total": 2999,
                "currency": "gbp",
                "customer": "cus_test_1",
                "metadata": metadata or {},
                **session_fields,
            }
        },
    }


async def post_webhook(client: AsyncClient, event: dict[str, Any]) -> Any:
    payload = json.dumps(event)
    return await client.post(
        "/api/checkout/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_stripe_payload(payload), "Content-Type": "application/json"},
    )


@pytest.fixture(autouse=True)
def mock_queue():
    """Mock the SAQ queue to avoid Redis connections in tests."""
    mock_job = MagicMock()
    mock_job.id = "test-job-id"
    mock_job.key = "test-job-key"

    with patch("claimease.tasks.queue.queue.enqueue", new_callable=AsyncMock) as mock_enqueue:
        mock_enqueue.return_value = mock_job
        yield mock_enqueue


@pytest.fixture(autouse=True)
def reset_process_state():
    """Clear in-memory stores and circuit breakers between tests."""
    get_memory_store().clear()
    get_memory_rate_limiter().reset()
    openai_circuit.reset()
    stripe_circuit.reset()
    yield
    get_memory_store().clear()
    get_memory_rate_limiter().reset()


@pytest.fixture
async def test_engine(tmp_path):
    """A fresh SQLite database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'claimease_test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging data and calling services directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_context(session_factory):
    """Replacement for ``get_session_context`` bound to the test database."""

    @asynccontextmanager
    async def _context():
        async with session_factory() as session:
            yield session

    return _context


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test HTTP client. Each request gets its own session, as in production."""

    async def override_get_session():
        async with session_factory() as request_session:
            yield request_session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _create_account(session: AsyncSession, **fields: Any) -> Account:
    account = Account(**fields)
    session.add(account)
    await session.commit()
    return account


@pytest.fixture
async def free_account(session: AsyncSession) -> Account:
    return await _create_account(session, email="free@example.com", name="Free User")


@pytest.fixture
async def single_claim_account(session: AsyncSession) -> Account:
    return await _create_account(
        session,
        email="single@example.com",
        name="Single User",
        plan=PlanTier.SINGLE_CLAIM,
        plan_expires_at=utcnow() + timedelta(days=365),
    )


@pytest.fixture
async def unlimited_account(session: AsyncSession) -> Account:
    return await _create_account(
        session,
        email="unlimited@example.com",
        name="Unlimited User",
        plan=PlanTier.UNLIMITED,
        plan_expires_at=utcnow() + timedelta(days=365),
    )


def auth_headers_for(account: Account) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_token(account)}"}


class AuthenticatedClient:
    """Wrapper for AsyncClient with authentication."""

    def __init__(self, client: AsyncClient, headers: dict[str, str]):
        self.client = client
        self.headers = headers

    async def get(self, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("headers", {}).update(self.headers)
        return await self.client.get(url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("headers", {}).update(self.headers)
        return await self.client.post(url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> Any:
        kwargs.setdefault("headers", {}).update(self.headers)
        return await self.client.patch(url, **kwargs)


@pytest.fixture
def free_client(client: AsyncClient, free_account: Account) -> AuthenticatedClient:
    return AuthenticatedClient(client, auth_headers_for(free_account))


@pytest.fixture
def single_claim_client(client: AsyncClient, single_claim_account: Account) -> AuthenticatedClient:
    return AuthenticatedClient(client, auth_headers_for(single_claim_account))


@pytest.fixture
def unlimited_client(client: AsyncClient, unlimited_account: Account) -> AuthenticatedClient:
    return AuthenticatedClient(client, auth_headers_for(unlimited_account))
