"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- API client with the database dependency overridden
- Mock external services (Resend, Slack, PayPal)
- Test data factories
"""
# Secrets must be in the environment before app.core.config is imported
import os
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-0001")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")
# Every test client shares one IP; keep the webhook flood guard out of the way
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "100000")

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import Response
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db, utcnow
from app.db.models.inquiry import Inquiry
from app.db.models.puppy import Puppy, PuppyStatus
from app.db.models.reservation import (
    PaymentProvider,
    Reservation,
    ReservationChannel,
    ReservationStatus,
)
from app.db.models.webhook_event import WebhookEvent
from app.core.config import settings
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-api-key"}
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


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
async def session_maker(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(session_maker):
    """
    Test client with database override.

    Every request gets its own session on the shared in-memory database, as
    in production, so route commits/rollbacks never touch the test's session.
    """
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Mock External Services
# ============================================================================

def _mock_http_client(status_code: int = 200, json_body: Any = None):
    mock_response = MagicMock(spec=Response)
    mock_response.status_code = status_code
    mock_response.is_success = 200 <= status_code < 300
    mock_response.text = json.dumps(json_body or {})
    mock_response.json.return_value = json_body or {}

    mock_instance = AsyncMock()
    mock_instance.post = AsyncMock(return_value=mock_response)
    mock_instance.request = AsyncMock(return_value=mock_response)
    mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_instance.__aexit__ = AsyncMock(return_value=None)
    return mock_instance


@pytest.fixture
def mock_alert_http():
    """Mock httpx in the alert service (Resend and Slack both answer 200)"""
    with patch("app.domain.services.alert_service.httpx.AsyncClient") as mock_client:
        mock_instance = _mock_http_client(200, {"id": "email_123"})
        mock_client.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def alert_channels():
    """Configure both alert channels"""
    with patch.object(settings, "RESEND_API_KEY", "re_test_key"), \
         patch.object(settings, "ALERT_EMAILS", "owner@example.com"), \
         patch.object(settings, "SLACK_WEBHOOK_URL", "https://hooks.slack.test/T000/B000/XXX"):
        yield


@pytest.fixture
def mock_notification_http():
    """Mock httpx in the notification service (Resend answers 200)"""
    with patch("app.domain.services.notification_service.httpx.AsyncClient") as mock_client:
        mock_instance = _mock_http_client(200, {"id": "email_456"})
        mock_client.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def notification_email():
    """Configure Resend and the owner address for payment notifications"""
    with patch.object(settings, "RESEND_API_KEY", "re_test_key"), \
         patch.object(settings, "OWNER_EMAIL", "owner@example.com"):
        yield


@pytest.fixture
def mock_paypal_client():
    """Replace the PayPal REST client used by the webhook route and handler"""
    client = MagicMock()
    client.verify_webhook_signature = AsyncMock(return_value=True)
    client.get_order = AsyncMock(return_value={})
    with patch("app.api.webhooks.paypal.get_paypal_client", return_value=client), \
         patch("app.domain.services.payments.paypal_handler.get_paypal_client", return_value=client):
        yield client


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def puppy_factory(db_session: AsyncSession):
    """Factory for creating test puppies"""
    async def _create_puppy(
        name: str = "Bella",
        price_usd: Decimal | float | None = Decimal("4000.00"),
        status: PuppyStatus = PuppyStatus.AVAILABLE,
        is_archived: bool = False,
        sold_at: datetime | None = None,
    ) -> Puppy:
        puppy = Puppy(
            name=name,
            price_usd=Decimal(str(price_usd)) if price_usd is not None else None,
            status=status,
            is_archived=is_archived,
        )
        if sold_at is not None:
            puppy.sold_at = sold_at
        db_session.add(puppy)
        await db_session.commit()
        await db_session.refresh(puppy)
        return puppy

    return _create_puppy


_payment_counter = 0


def next_payment_id(prefix: str = "pi_test") -> str:
    """Unique external payment id"""
    global _payment_counter
    _payment_counter += 1
    return f"{prefix}_{_payment_counter:06d}"


@pytest.fixture
def reservation_factory(db_session: AsyncSession):
    """
    Factory for creating reservations directly, bypassing the claim.

    Does not touch the puppy's status; set it with puppy_factory.
    """
    async def _create_reservation(
        puppy_id: str,
        status: ReservationStatus = ReservationStatus.PENDING,
        customer_email: str = "buyer@example.com",
        payment_provider: PaymentProvider = PaymentProvider.STRIPE,
        external_payment_id: str | None = None,
        amount: Decimal | float = Decimal("300.00"),
        expires_at: datetime | None = None,
        created_at: datetime | None = None,
        notes: str | None = None,
    ) -> Reservation:
        now = utcnow()
        if expires_at is None and status == ReservationStatus.PENDING:
            expires_at = now + timedelta(minutes=15)
        reservation = Reservation(
            puppy_id=puppy_id,
            customer_email=customer_email,
            channel=ReservationChannel.SITE,
            payment_provider=payment_provider,
            external_payment_id=external_payment_id or next_payment_id(),
            amount=Decimal(str(amount)),
            status=status,
            expires_at=expires_at,
            notes=notes,
            created_at=created_at or now,
            updated_at=created_at or now,
        )
        db_session.add(reservation)
        await db_session.commit()
        await db_session.refresh(reservation)
        return reservation

    return _create_reservation


@pytest.fixture
def inquiry_factory(db_session: AsyncSession):
    """Factory for creating stored inquiries"""
    async def _create_inquiry(
        email: str = "visitor@example.com",
        client_ip: str | None = "203.0.113.7",
        created_at: datetime | None = None,
    ) -> Inquiry:
        inquiry = Inquiry(
            email=email,
            client_ip=client_ip,
            message="Is she still available?",
            created_at=created_at or utcnow(),
        )
        db_session.add(inquiry)
        await db_session.commit()
        return inquiry

    return _create_inquiry


@pytest.fixture
def webhook_event_factory(db_session: AsyncSession):
    """Factory for creating ledger rows"""
    async def _create_event(
        provider: str = "stripe",
        event_id: str = "evt_test",
        event_type: str = "checkout.session.completed",
        idempotency_key: str | None = None,
        processed: bool = False,
        processing_started_at: datetime | None = None,
        processing_error: str | None = None,
        reservation_id: str | None = None,
        created_at: datetime | None = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            provider=provider,
            event_id=event_id,
            idempotency_key=idempotency_key or f"{provider}:{event_id}",
            event_type=event_type,
            payload={},
            processed=processed,
            processing_started_at=processing_started_at,
            processing_error=processing_error,
            reservation_id=reservation_id,
            created_at=created_at or utcnow(),
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event


# ============================================================================
# Provider payload builders
# ============================================================================

def build_checkout_session_event(
    puppy_id: str | None,
    *,
    event_id: str = "evt_checkout_1",
    event_type: str = "checkout.session.completed",
    payment_intent: str | None = "pi_checkout_1",
    session_id: str = "cs_test_1",
    amount_total: int = 30000,
    email: str = "buyer@example.com",
    payment_status: str = "paid",
    channel: str | None = None,
) -> dict:
    """Stripe checkout.session.* event"""
    metadata: dict[str, str] = {}
    if puppy_id:
        metadata["puppy_id"] = puppy_id
    if channel:
        metadata["channel"] = channel
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": payment_intent,
                "payment_status": payment_status,
                "amount_total": amount_total,
                "currency": "usd",
                "customer_details": {"email": email, "name": "Jane Buyer", "phone": None},
                "metadata": metadata,
            }
        },
    }


def sign_stripe_payload(body: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
    """Stripe-Signature header for ``body``"""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_capture_event(
    puppy_id: str | None,
    *,
    event_id: str = "WH-CAPTURE-1",
    capture_id: str = "CAPTURE-1",
    value: str = "300.00",
    status: str = "COMPLETED",
    email: str | None = "buyer@example.com",
    order_id: str | None = None,
) -> dict:
    """PayPal PAYMENT.CAPTURE.COMPLETED event"""
    custom: dict[str, str] = {}
    if puppy_id:
        custom["puppy_id"] = puppy_id
    if email:
        custom["customer_email"] = email
    resource: dict[str, Any] = {
        "id": capture_id,
        "status": status,
        "amount": {"currency_code": "USD", "value": value},
        "custom_id": json.dumps(custom),
    }
    if order_id:
        resource["supplementary_data"] = {"related_ids": {"order_id": order_id}}
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": resource,
    }


def build_refund_event(
    capture_id: str,
    *,
    event_id: str = "WH-REFUND-1",
    refund_id: str = "REFUND-1",
    value: str = "300.00",
) -> dict:
    """PayPal PAYMENT.CAPTURE.REFUNDED event; the refund links up to its capture"""
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {
            "id": refund_id,
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": value},
            "links": [
                {"href": f"https://api.sandbox.paypal.com/v2/payments/refunds/{refund_id}", "rel": "self"},
                {"href": f"https://api.sandbox.paypal.com/v2/payments/captures/{capture_id}", "rel": "up"},
            ],
        },
    }


PAYPAL_HEADERS = {
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2024-01-01T00:00:00Z",
    "paypal-cert-url": "https://api.sandbox.paypal.com/cert.pem",
    "paypal-auth-algo": "SHA256withRSA",
}


# ============================================================================
# Resets
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import reset_circuit_breakers
    reset_circuit_breakers()
    yield
    reset_circuit_breakers()


@pytest.fixture(autouse=True)
def reset_alert_throttle():
    """Forget in-memory alert throttle marks between tests"""
    from app.domain.services.alert_service import reset_alert_throttle as _reset
    _reset()
    yield
    _reset()


@pytest.fixture(autouse=True)
def no_alert_channels():
    """No test sends real alerts unless it opts in with alert_channels"""
    with patch.object(settings, "RESEND_API_KEY", ""), \
         patch.object(settings, "SLACK_WEBHOOK_URL", ""):
        yield


class FakeRedis:
    """In-memory stand-in for Redis with a compatible interface and TTL tracking."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

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

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis in every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.alert_service.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake
