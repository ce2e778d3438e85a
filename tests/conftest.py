import os
import uuid
from typing import AsyncGenerator, Optional

# Settings are read (and cached) on first import of libs.common.config.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.notifications import Notification, get_notification_dispatcher
from libs.db.base import Base
from libs.db.session import get_async_db

# Import all models so metadata includes every table
from services.payments_service import models as _payment_models  # noqa: F401
from services.payments_service.stripe_client import (
    ProcessorResult,
    StripeError,
    get_stripe_client,
)
from services.registrations_service import models as _registration_models  # noqa: F401

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeStripeClient:
    """In-memory stand-in for StripeClient.

    ``charge_status``/``refund_status`` set the status returned by the next
    create call; ``error`` makes every call raise.
    """

    def __init__(self):
        self.charge_status = "succeeded"
        self.refund_status = "succeeded"
        self.error: Optional[StripeError] = None
        self.charges: list[dict] = []
        self.refunds: list[dict] = []
        self.payment_intents: dict[str, ProcessorResult] = {}
        self.refund_objects: dict[str, ProcessorResult] = {}

    def fail_with(self, message: str = "Your card was declined.", status_code=402):
        self.error = StripeError(message=message, status_code=status_code)

    def settle(self, processor_id: str, status: str) -> None:
        """Change what Stripe reports for an existing intent or refund."""
        store = (
            self.refund_objects
            if processor_id in self.refund_objects
            else self.payment_intents
        )
        existing = store[processor_id]
        store[processor_id] = ProcessorResult(
            id=existing.id, status=status, amount=existing.amount
        )

    async def create_charge(
        self,
        *,
        amount,
        customer_id,
        payment_method_id,
        metadata,
        idempotency_key,
        description=None,
    ) -> ProcessorResult:
        self.charges.append(
            {
                "amount": amount,
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.error:
            raise self.error
        result = ProcessorResult(
            id=f"pi_{uuid.uuid4().hex[:16]}", status=self.charge_status, amount=amount
        )
        self.payment_intents[result.id] = result
        return result

    async def retrieve_payment_intent(self, payment_intent_id) -> ProcessorResult:
        if self.error:
            raise self.error
        return self.payment_intents[payment_intent_id]

    async def create_refund(
        self, *, payment_intent_id, amount, metadata, idempotency_key
    ) -> ProcessorResult:
        self.refunds.append(
            {
                "payment_intent_id": payment_intent_id,
                "amount": amount,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.error:
            raise self.error
        result = ProcessorResult(
            id=f"re_{uuid.uuid4().hex[:16]}", status=self.refund_status, amount=amount
        )
        self.refund_objects[result.id] = result
        return result

    async def retrieve_refund(self, refund_id) -> ProcessorResult:
        if self.error:
            raise self.error
        return self.refund_objects[refund_id]


class RecordingNotifier:
    def __init__(self):
        self.sent: list[Notification] = []

    async def dispatch(self, notification: Notification) -> None:
        self.sent.append(notification)

    def of_type(self, template_type: str) -> list[Notification]:
        return [n for n in self.sent if n.template_type == template_type]


class AuthState:
    """Mutable caller identity used by the get_current_user override."""

    def __init__(self):
        self.user = AuthUser(sub=str(uuid.uuid4()), email="player@example.com")

    def login(self, user_id: uuid.UUID, *, role: str = "authenticated") -> AuthUser:
        self.user = AuthUser(sub=str(user_id), role=role)
        return self.user

    def login_admin(self) -> AuthUser:
        return self.login(uuid.uuid4(), role="admin")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory SQLite database per test. StaticPool keeps the single
    connection alive so every session sees the same tables.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def auth() -> AuthState:
    return AuthState()


# ---------------------------------------------------------------------------
# HTTP clients
# ---------------------------------------------------------------------------


def _override_dependencies(app, db_session, auth, stripe=None, notifier=None):
    app.dependency_overrides[get_async_db] = lambda: db_session
    app.dependency_overrides[get_current_user] = lambda: auth.user
    if notifier is not None:
        app.dependency_overrides[get_notification_dispatcher] = lambda: notifier
    if stripe is not None:
        app.dependency_overrides[get_stripe_client] = lambda: stripe


@pytest_asyncio.fixture
async def registrations_client(
    db_session, auth, notifier
) -> AsyncGenerator[AsyncClient, None]:
    from services.registrations_service.app.main import app

    _override_dependencies(app, db_session, auth, notifier=notifier)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def payments_client(
    db_session, auth, stripe, notifier
) -> AsyncGenerator[AsyncClient, None]:
    from services.payments_service.app.main import app

    _override_dependencies(app, db_session, auth, stripe=stripe, notifier=notifier)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
