"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- In-memory Redis replacement
- A PaymentServices container wired to both, with recorded sleeps
- HTTP test client against the FastAPI app
- Stripe webhook signing
"""
# Settings are read at import time; configure before importing the package
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from permit_payments.core.config import settings
from permit_payments.db.database import Base, get_db
from permit_payments.db.models.application import ApplicationStatus, PermitApplication
from permit_payments.domain.container import PaymentServices
from permit_payments.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory Redis replacement with the subset of commands the services use."""

    def __init__(self) -> None:
        self._store: dict[str, Any] = {}
        self._ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        if key in self._store:
            self._ttls[key] = ttl

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    # Sorted sets
    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._store.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._store.get(key) or {}
        doomed = [m for m, s in zset.items() if min_score <= s <= max_score]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zcard(self, key: str) -> int:
        return len(self._store.get(key) or {})

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list:
        ordered = sorted((self._store.get(key) or {}).items(), key=lambda item: item[1])
        end = len(ordered) if end == -1 else end + 1
        window = ordered[start:end]
        if withscores:
            return window
        return [member for member, _ in window]

    # Pub/Sub and lists
    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    def messages(self, channel: str) -> list[dict[str, Any]]:
        return [json.loads(m) for c, m in self.published if c == channel]

    async def lpush(self, key: str, *values: str) -> int:
        items = self._store.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> None:
        items = self._store.get(key)
        if items is not None:
            self._store[key] = items[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._store.get(key) or []
        return items[start:end + 1]

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ============================================================================
# Services
# ============================================================================

class RecordedSleep:
    """
    Stand-in for asyncio.sleep: records the requested delay and returns at once.

    Before returning it waits for in-flight recovery claims to clear, so a
    re-check never overlaps the attempt that scheduled it.
    """

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        for _ in range(2000):
            if not any(k.endswith(":in_flight") for k in self._redis._store):
                break
            await asyncio.sleep(0.001)
        await asyncio.sleep(0)


@pytest.fixture
def recorded_sleep(fake_redis: FakeRedis) -> RecordedSleep:
    return RecordedSleep(fake_redis)


@pytest.fixture
async def services(session_factory, fake_redis, recorded_sleep) -> AsyncGenerator[PaymentServices, None]:
    container = PaymentServices(
        settings=settings,
        redis=fake_redis,
        session_factory=session_factory,
        sleep=recorded_sleep,
    )
    await container.start()
    yield container
    await container.stop()


@pytest.fixture
def wait_until():
    """Poll an (async or sync) predicate until it is truthy."""
    async def _wait(predicate, timeout: float = 5.0) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(0.005)
        raise AssertionError("condition not met before timeout")

    return _wait


# ============================================================================
# HTTP
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(services: PaymentServices, session_factory):
    """Create test client bound to the test container and database"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data
# ============================================================================

@pytest.fixture
def application_factory(session_factory):
    """Factory for permit applications"""
    async def _create(
        *,
        user_id: int = 7,
        status: ApplicationStatus = ApplicationStatus.AWAITING_PAYMENT,
        amount: Decimal = Decimal("150.00"),
        payment_intent_id: str | None = None,
    ) -> PermitApplication:
        async with session_factory() as db:
            application = PermitApplication(
                user_id=user_id,
                status=status.value,
                amount=amount,
                currency="MXN",
                payment_intent_id=payment_intent_id,
            )
            db.add(application)
            await db.commit()
            await db.refresh(application)
            return application

    return _create


def make_intent(
    payment_intent_id: str = "pi_test_123",
    status: str = "requires_payment_method",
    *,
    application_id: int | None = None,
    amount: int = 15000,
    method: str = "card",
    **extra: Any,
) -> dict[str, Any]:
    """Provider payment intent as the SDK returns it (StripeObject is a dict)."""
    metadata = {"payment_method": method}
    if application_id is not None:
        metadata["application_id"] = str(application_id)
    intent = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "currency": "mxn",
        "client_secret": f"{payment_intent_id}_secret_abc123",
        "created": 1700000000,
        "metadata": metadata,
        "payment_method_types": ["oxxo"] if method == "cash_voucher" else ["card"],
    }
    intent.update(extra)
    return intent


@pytest.fixture
def intent_factory():
    return make_intent


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_event():
    """Build (raw body, Stripe-Signature header) for an event wrapping ``intent``."""
    def _build(
        event_id: str,
        event_type: str,
        intent: dict[str, Any],
        secret: str = "whsec_test_secret",
    ) -> tuple[bytes, str]:
        body = json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": intent},
        }).encode("utf-8")
        return body, sign_payload(body, secret)

    return _build
