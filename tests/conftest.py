"""
Global pytest fixtures for the billing webhook test suite.

Provides:
- Per-test SQLite database (file backed) with tables created from the models
- Webhook pipeline collaborators wired to the test database
- Async client against the real FastAPI app
- Signed delivery builders and organization factories
"""
import hashlib
import hmac
import json
import os
import time
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WEBHOOK_SECRET_PAYSTACK"] = "test-paystack-webhook-secret"
os.environ["WEBHOOK_SECRET_FLW"] = "test-flutterwave-webhook-secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack"
os.environ["FLUTTERWAVE_SECRET_KEY"] = "FLWSECK_TEST-flutterwave"
os.environ["WEBHOOK_ACK_UNKNOWN_ORG"] = "false"
os.environ.pop("UPSTASH_REDIS_URL", None)
os.environ.pop("UPSTASH_REDIS_TOKEN", None)
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

PAYSTACK_SECRET = os.environ["WEBHOOK_SECRET_PAYSTACK"]
FLUTTERWAVE_SECRET = os.environ["WEBHOOK_SECRET_FLW"]


class RecordingNotificationSink:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, notification: Dict[str, Any]) -> None:
        self.sent.append(notification)


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings():
    from app.shared.core.config import reload_settings_from_environment

    return reload_settings_from_environment()


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from app.shared.db.session import enable_sqlite_savepoints

    db_file = f"test_{uuid4().hex}.sqlite"
    db_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_async_engine(db_url, echo=False)
    enable_sqlite_savepoints(engine)
    yield engine
    await engine.dispose()

    # Cleanup
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def session_maker(async_engine):
    """Create database tables and return a session factory bound to them."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from app.shared.db.base import Base
    import app.models  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator:
    """Provide an async session with proper cleanup."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    yield db_session


# ============================================================================
# Webhook pipeline
# ============================================================================

@pytest.fixture
def replay_registry():
    from app.modules.billing.domain.billing.replay_registry import InMemoryReplayRegistry

    return InMemoryReplayRegistry(ttl_seconds=600)


@pytest.fixture
def notification_sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest_asyncio.fixture
async def notifier(session_maker, notification_sink):
    """Dispatcher bound to the test database; in-flight alerts are drained on teardown."""
    from app.shared.core.notifications import NotificationDispatcher

    dispatcher = NotificationDispatcher(session_maker, notification_sink, timeout_seconds=2)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def processor(session_maker, replay_registry, notifier, settings):
    from app.modules.billing.domain.billing.webhook_processor import WebhookProcessor

    return WebhookProcessor(
        session_maker=session_maker,
        replay_registry=replay_registry,
        notifier=notifier,
        settings=settings,
    )


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app(processor, replay_registry, notifier):
    """Use the real app with the webhook pipeline bound to the test database."""
    from app.main import app as webhook_app

    webhook_app.state.webhook_processor = processor
    webhook_app.state.replay_registry = replay_registry
    webhook_app.state.notifications = notifier
    yield webhook_app
    for name in ("webhook_processor", "replay_registry", "notifications"):
        if hasattr(webhook_app.state, name):
            delattr(webhook_app.state, name)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator:
    """Async test client for FastAPI."""
    from httpx import AsyncClient, ASGITransport

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client."""
    yield async_client


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def create_org(db) -> Callable:
    """Factory for an organization with one admin and one regular member."""
    from app.models.tenant import Organization, User

    async def _create(org_id: Optional[str] = None, **fields: Any):
        org = Organization(id=org_id or f"org-{uuid4().hex[:8]}", name="Test Org", **fields)
        db.add(org)
        db.add(User(org_id=org.id, email="admin@example.com", is_admin=True))
        db.add(User(org_id=org.id, email="member@example.com", is_admin=False))
        await db.commit()
        return org

    return _create


def _sign(secret: str, body: bytes, digest: Any) -> str:
    return hmac.new(secret.encode(), body, digest).hexdigest()


@pytest.fixture
def paystack_delivery() -> Callable[..., Tuple[bytes, Dict[str, str]]]:
    """Build a signed Paystack delivery: (raw body, headers)."""

    def _build(
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        timestamp: Optional[str] = None,
        secret: str = PAYSTACK_SECRET,
    ) -> Tuple[bytes, Dict[str, str]]:
        body = json.dumps(payload).encode()
        headers = {
            "content-type": "application/json",
            "x-paystack-signature": _sign(secret, body, hashlib.sha512),
            "x-event-timestamp": timestamp or str(int(time.time())),
            "x-event-id": event_id or f"evt-{uuid4().hex[:12]}",
        }
        return body, headers

    return _build


@pytest.fixture
def flutterwave_delivery() -> Callable[..., Tuple[bytes, Dict[str, str]]]:
    """Build a signed Flutterwave delivery: (raw body, headers)."""

    def _build(
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        timestamp: Optional[str] = None,
        secret: str = FLUTTERWAVE_SECRET,
    ) -> Tuple[bytes, Dict[str, str]]:
        body = json.dumps(payload).encode()
        headers = {
            "content-type": "application/json",
            "verif-hash": _sign(secret, body, hashlib.sha256),
            "x-event-timestamp": timestamp or str(int(time.time())),
            "x-event-id": event_id or f"evt-{uuid4().hex[:12]}",
        }
        return body, headers

    return _build


def paystack_charge(
    *,
    status: str = "success",
    reference: str = "ref-1",
    transaction_id: Any = 1001,
    amount: int = 500000,
    metadata: Any = None,
    **data: Any,
) -> Dict[str, Any]:
    payload_data: Dict[str, Any] = {
        "id": transaction_id,
        "reference": reference,
        "status": status,
        "amount": amount,
        "currency": "NGN",
        "paid_at": "2026-01-10T12:00:00.000Z",
        "customer": {"id": 77, "customer_code": "CUS_abc", "email": "payer@example.com"},
    }
    if metadata is not None:
        payload_data["metadata"] = metadata
    payload_data.update(data)
    return {"event": "charge.success", "data": payload_data}


def flutterwave_charge(
    *,
    status: str = "successful",
    tx_ref: str = "flw-ref-1",
    transaction_id: Any = 285959875,
    amount: Any = 100,
    meta: Any = None,
    **data: Any,
) -> Dict[str, Any]:
    payload_data: Dict[str, Any] = {
        "id": transaction_id,
        "tx_ref": tx_ref,
        "status": status,
        "amount": amount,
        "currency": "USD",
        "created_at": "2026-01-10T12:00:00.000Z",
        "customer": {"id": 215604089, "email": "payer@example.com"},
    }
    if meta is not None:
        payload_data["meta"] = meta
    payload_data.update(data)
    return {"event": "charge.completed", "data": payload_data}


@pytest.fixture
def make_paystack_charge() -> Callable[..., Dict[str, Any]]:
    return paystack_charge


@pytest.fixture
def make_flutterwave_charge() -> Callable[..., Dict[str, Any]]:
    return flutterwave_charge
