"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Each test runs inside an outer transaction that rolls back after the test.
- ``TEST_DATABASE_URL`` selects the database; it defaults to an in-memory
  SQLite database so the suite runs without a PostgreSQL server.
- Payment providers are replaced with in-process fakes: a ``StripeGateway``
  subclass with canned responses (webhook signature checks stay real) and a
  ``WaafiPayGateway`` whose HTTP client is backed by ``httpx.MockTransport``.
"""

import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from kitab.auth.jwt import create_token_for_user
from kitab.auth.passwords import hash_password
from kitab.billing.dependencies import get_stripe_gateway, get_waafipay_gateway
from kitab.billing.errors import ProviderError
from kitab.billing.stripe_gateway import (
    ProviderPrice,
    ProviderSubscription,
    SetupIntentResult,
    StripeGateway,
)
from kitab.billing.waafipay import SUCCESS_CODE, WaafiPayGateway
from kitab.database import Base, get_db
from kitab.main import app
from kitab.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"
PLAN_ID = "price_test_monthly"

_test_db_url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


def _make_engine():
    if _test_db_url.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory DB
        return create_async_engine(
            _test_db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(_test_db_url, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Session-scoped: create / drop all tables once per test session
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_engine():
    """Create a session-scoped engine tied to the session event loop."""
    engine = _make_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def setup_test_db(test_engine):
    """Create all tables at the start of the session and drop them at the end."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Per-test: transactional rollback for isolation
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_session(test_engine, setup_test_db) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session wrapped in a transaction that always rolls back."""
    async with test_engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(bind=connection, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            # A rollback inside the app (webhook failure path) already ended it
            if transaction.is_active:
                await transaction.rollback()


# ---------------------------------------------------------------------------
# Payment provider fakes
# ---------------------------------------------------------------------------


class FakeStripeGateway(StripeGateway):
    """Stripe gateway with canned responses that records every provider call.

    ``construct_event`` is inherited, so webhook signatures are verified
    against ``WEBHOOK_SECRET`` exactly as in production.
    """

    def __init__(self) -> None:
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, plan_id=PLAN_ID)
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self.payment_method: str | None = "pm_test_card"
        # Status Stripe reports for a new subscription when a trial is requested
        self.subscription_status = "trialing"
        self._customers = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise ProviderError(f"{name} failed")

    def called(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def create_customer(self, email: str, name: str, user_id: str) -> str:
        self._record("create_customer", email, user_id)
        self._customers += 1
        return f"cus_test_{self._customers}"

    async def create_setup_intent(self, customer_id: str) -> SetupIntentResult:
        self._record("create_setup_intent", customer_id)
        return SetupIntentResult(client_secret=f"seti_secret_{customer_id}", intent_id="seti_test_1")

    async def retrieve_setup_intent(self, intent_id: str) -> str | None:
        self._record("retrieve_setup_intent", intent_id)
        return self.payment_method

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> None:
        self._record("attach_payment_method", payment_method_id, customer_id)

    async def create_subscription(
        self, customer_id: str, trial_days: int | None = None
    ) -> ProviderSubscription:
        self._record("create_subscription", customer_id, trial_days)
        status = self.subscription_status
        if status == "trialing" and not trial_days:
            status = "active"
        start = datetime(2026, 1, 1)
        end = start + timedelta(days=trial_days or 30)
        trialing = status == "trialing"
        return ProviderSubscription(
            id=f"sub_for_{customer_id}",
            status=status,
            current_period_start=start,
            current_period_end=end,
            trial_start=start if trialing else None,
            trial_end=end if trialing else None,
            price=ProviderPrice(id=PLAN_ID, unit_amount=Decimal("2.00"), currency="usd", interval="month"),
        )

    async def cancel_subscription(self, subscription_id: str, reason: str | None) -> None:
        self._record("cancel_subscription", subscription_id, reason)


class WaafiPayStub:
    """``httpx.MockTransport`` handler answering like the WaafiPay ASM endpoint."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.preauth_code = SUCCESS_CODE
        self.commit_code = SUCCESS_CODE
        self.transaction_id = "TXN-1001"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if body["serviceName"] == "API_PREAUTHORIZE":
            code = self.preauth_code
            params = {"transactionId": self.transaction_id, "state": "APPROVED"}
        else:
            code = self.commit_code
            params = {"transactionId": body["serviceParams"]["transactionId"]}
        return httpx.Response(
            200,
            json={
                "responseCode": code,
                "responseMsg": "RCS_SUCCESS" if code == SUCCESS_CODE else "RCS_USER_REJECTED",
                "params": params,
            },
        )

    @property
    def service_names(self) -> list[str]:
        return [body["serviceName"] for body in self.requests]


@pytest.fixture
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def waafipay_stub() -> WaafiPayStub:
    return WaafiPayStub()


@pytest_asyncio.fixture
async def waafipay_gateway(waafipay_stub: WaafiPayStub) -> AsyncGenerator[WaafiPayGateway, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(waafipay_stub)) as http_client:
        yield WaafiPayGateway(
            api_url="https://waafipay.test/asm",
            merchant_uid="M0910291",
            api_user_id="1000416",
            api_key="API-test-key",
            http_client=http_client,
        )


@pytest.fixture
def sign_stripe_payload() -> Callable[[dict], tuple[bytes, str]]:
    """Serialize an event and build a valid ``Stripe-Signature`` header for it."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        payload = json.dumps(event).encode("utf-8")
        timestamp = int(time.time())
        signed = f"{timestamp}.".encode() + payload
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={signature}"

    return _sign


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    stripe_gateway: FakeStripeGateway,
    waafipay_gateway: WaafiPayGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session and provider fakes."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[get_waafipay_gateway] = lambda: waafipay_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated user
# ---------------------------------------------------------------------------


async def _make_user(
    db_session: AsyncSession,
    *,
    prefix: str = "reader",
    subscription_status: int = 0,
    trial_status: str | None = None,
    is_active: bool = True,
) -> User:
    """Create a user directly in the DB."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"{prefix}-{unique}@test.com",
        hashed_password=hash_password("testpass123"),
        full_name="Test Reader",
        is_active=is_active,
        subscription_status=subscription_status,
        trial_status=trial_status,
    )
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    return user


def _headers_for(user: User) -> dict[str, str]:
    token = create_token_for_user(str(user.id), user.email)
    return {"Authorization": f"Bearer {token['access_token']}"}


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """A user who has never subscribed or trialed."""
    return await _make_user(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return _headers_for(test_user)


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory for extra users: ``await make_user(trial_status="cancelled")``."""

    async def _factory(**kwargs) -> User:
        return await _make_user(db_session, **kwargs)

    return _factory


@pytest.fixture
def headers_for() -> Callable[[User], dict[str, str]]:
    return _headers_for
