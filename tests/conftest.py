"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, file-backed SQLite per test)
- Fake Redis, provider adapters and webhook receivers on httpx.MockTransport
- Test data factories (users, transactions, subscriptions)
"""
# הגדרת JWT_SECRET_KEY לפני ייבוא app — הולידטור דורש מפתח כש-DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import json
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Callable
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from app.core.auth import create_access_token
from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.db.database import Base, create_session_factory, get_db
from app.db.models.transaction import PaymentMethod, PaymentProvider, Transaction, TransactionStatus
from app.db.models.user import User, UserRole
from app.db.models.webhook_subscription import WebhookSubscription
from app.domain.services.providers.provider_factory import (
    ProviderRegistry,
    get_provider_registry,
    reset_providers,
)
from app.domain.services.subscription_service import generate_webhook_secret
from app.domain.services.transaction_store import generate_transaction_id
from app.domain.services.webhook_dispatcher import (
    WebhookDispatcher,
    get_webhook_dispatcher,
    reset_webhook_dispatcher,
)
from app.core.clock import utcnow
from app.main import app
from tests.provider_fakes import FakeProviderApi, build_equity_provider, build_mpesa_provider

# הערה: SQLite בקובץ ולא :memory: עם StaticPool — ה-dispatcher פותח sessions
# משלו שרצים במקביל ל-session של הבקשה, וחיבור יחיד משותף לא מחזיק את זה

# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """Create async test database engine"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        connect_args={"check_same_thread": False, "timeout": 15},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()

@pytest.fixture(scope="function")
def session_factory(async_engine):
    return create_session_factory(async_engine)

@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()

# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()

@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake

# ============================================================================
# Singletons Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset circuit breakers, provider registry and dispatcher between tests"""
    CircuitBreaker.reset_all()
    reset_providers()
    reset_webhook_dispatcher()
    yield
    CircuitBreaker.reset_all()
    reset_providers()
    reset_webhook_dispatcher()

@pytest.fixture(autouse=True)
def callback_secrets_unset():
    """ברירת מחדל: callbacks לא חתומים. בדיקות חתימה מגדירות secret בעצמן."""
    with patch.object(settings, "MPESA_CALLBACK_SECRET", ""), \
         patch.object(settings, "EQUITY_CALLBACK_SECRET", ""):
        yield

# ============================================================================
# Webhook receiver (merchant endpoints)
# ============================================================================

class WebhookReceiver:
    """
    Fake merchant endpoint for httpx.MockTransport.

    `responses` maps URL → list of status codes returned in order; once the
    list is exhausted the last status repeats. Unknown URLs answer 200.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, list[int]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        statuses = self.responses.get(url)
        if not statuses:
            return httpx.Response(200, json={"received": True})
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        return httpx.Response(status, json={"received": status < 300})

    def for_url(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def payloads(self, url: str | None = None) -> list[dict]:
        requests = self.for_url(url) if url else self.requests
        return [json.loads(r.content) for r in requests]

@pytest.fixture
def webhook_receiver() -> WebhookReceiver:
    return WebhookReceiver()

async def _no_sleep(_: float) -> None:
    return None

@pytest.fixture
def dispatcher(session_factory, webhook_receiver) -> WebhookDispatcher:
    """Dispatcher on the test database; retries do not actually wait"""
    return WebhookDispatcher(
        session_factory,
        transport=httpx.MockTransport(webhook_receiver.handler),
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=_no_sleep,
    )

# ============================================================================
# Provider APIs
# ============================================================================

@pytest.fixture
def provider_api() -> FakeProviderApi:
    return FakeProviderApi()

@pytest.fixture
def provider_registry(provider_api) -> ProviderRegistry:
    transport = httpx.MockTransport(provider_api.handler)
    return ProviderRegistry([build_mpesa_provider(transport), build_equity_provider(transport)])

# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, provider_registry, dispatcher):
    """Create test client with database, provider and dispatcher overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_registry] = lambda: provider_registry
    app.dependency_overrides[get_webhook_dispatcher] = lambda: dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await dispatcher.drain()
    app.dependency_overrides.clear()

# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    counter = {"n": 0}

    async def _create_user(
        role: UserRole = UserRole.MERCHANT,
        username: str | None = None,
        is_active: bool = True,
    ) -> User:
        counter["n"] += 1
        name = username or f"{role.value}-{counter['n']}"
        user = User(
            username=name,
            email=f"{name}@example.co.ke",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user

@pytest.fixture
async def merchant(user_factory) -> User:
    return await user_factory(UserRole.MERCHANT, username="acme-shop")

@pytest.fixture
async def admin_user(user_factory) -> User:
    return await user_factory(UserRole.ADMIN, username="ops-admin")

@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        role = user.role.value if hasattr(user.role, "value") else str(user.role)
        return {"Authorization": f"Bearer {create_access_token(user.id, role)}"}

    return _headers

@pytest.fixture
def transaction_factory(db_session: AsyncSession):
    """Factory for transactions in any status, bypassing the state machine"""

    async def _create_transaction(
        user_id: int,
        status: TransactionStatus = TransactionStatus.PENDING,
        amount: Decimal = Decimal("500.00"),
        provider: PaymentProvider = PaymentProvider.MPESA,
        payment_method: PaymentMethod = PaymentMethod.STK_PUSH,
        phone: str | None = "254712345678",
        account_number: str | None = None,
        provider_correlation_id: str | None = None,
        created_at=None,
        expires_in_minutes: int = 30,
        initiated_at=None,
        metadata: dict | None = None,
    ) -> Transaction:
        now = created_at or utcnow()
        transaction = Transaction(
            transaction_id=generate_transaction_id(),
            user_id=user_id,
            amount=amount,
            currency="KES",
            provider=provider,
            payment_method=payment_method,
            phone=phone,
            account_number=account_number,
            status=status,
            provider_correlation_id=provider_correlation_id,
            webhook_attempts=0,
            extra_metadata=metadata or {},
            created_at=now,
            updated_at=now,
            initiated_at=initiated_at,
            expires_at=now + timedelta(minutes=expires_in_minutes),
        )
        db_session.add(transaction)
        await db_session.commit()
        await db_session.refresh(transaction)
        return transaction

    return _create_transaction

@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for webhook subscriptions"""

    async def _create_subscription(
        user_id: int,
        url: str = "https://merchant.example.com/hooks",
        events: list[str] | None = None,
        max_attempts: int = 3,
        timeout_seconds: float = 5.0,
        is_active: bool = True,
        secret: str | None = None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            user_id=user_id,
            url=url,
            events=events or ["payment.completed", "payment.failed", "payment.refunded", "payment.cancelled"],
            secret=secret or generate_webhook_secret(),
            max_attempts=max_attempts,
            timeout_seconds=timeout_seconds,
            is_active=is_active,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription

