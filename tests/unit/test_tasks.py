"""Unit tests for worker tasks and notification dispatch."""

from datetime import timedelta

import pytest
from libs.common import notifications
from libs.common.datetime_utils import utc_now
from libs.common.notifications import ArqNotificationDispatcher, Notification
from services.payments_service import tasks as payment_tasks
from services.registrations_service import tasks as registration_tasks
from services.registrations_service.models import RegistrationPaymentStatus
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tests.factories import UserRegistrationFactory, seed, seed_registration


class FakePool:
    def __init__(self, error=None):
        self.jobs = []
        self.error = error

    async def enqueue_job(self, name, *args, **kwargs):
        if self.error:
            raise self.error
        self.jobs.append((name, args, kwargs))


class FakeEmailClient:
    def __init__(self, accept=True):
        self.accept = accept
        self.sent = []

    async def send_template(self, template_type, to_email, template_data):
        self.sent.append((template_type, to_email, template_data))
        return self.accept


def _notification():
    return Notification(
        template_type="refund_processed",
        to_email="player@example.com",
        template_data={"amount": "$20.00"},
        dedupe_key="abc:confirmed",
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_dispatch_enqueues_job_keyed_by_dedupe_key(monkeypatch):
    pool = FakePool()

    async def fake_pool():
        return pool

    monkeypatch.setattr(notifications, "get_arq_pool", fake_pool)

    await ArqNotificationDispatcher().dispatch(_notification())

    [(name, args, kwargs)] = pool.jobs
    assert name == "task_send_notification"
    assert args[0]["template_type"] == "refund_processed"
    assert kwargs["_job_id"] == "notify:abc:confirmed"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_dispatch_failure_is_logged_not_raised(monkeypatch):
    pool = FakePool(error=ConnectionError("redis down"))

    async def fake_pool():
        return pool

    monkeypatch.setattr(notifications, "get_arq_pool", fake_pool)

    await ArqNotificationDispatcher().dispatch(_notification())
    assert pool.jobs == []


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("accept", [True, False])
async def test_send_notification_task(monkeypatch, accept):
    client = FakeEmailClient(accept=accept)
    monkeypatch.setattr(payment_tasks, "get_email_client", lambda: client)

    sent = await payment_tasks.send_notification(_notification().model_dump())

    assert sent is accept
    assert client.sent == [
        ("refund_processed", "player@example.com", {"amount": "$20.00"})
    ]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_sweep_task_releases_expired_claims(monkeypatch, test_engine, db_session):
    registration, category = await seed_registration(db_session)
    await seed(
        db_session,
        UserRegistrationFactory.create(
            registration_id=registration.id,
            category_id=category.id,
            payment_status=RegistrationPaymentStatus.PROCESSING,
            processing_expires_at=utc_now() - timedelta(minutes=1),
        ),
    )
    monkeypatch.setattr(
        registration_tasks,
        "AsyncSessionLocal",
        async_sessionmaker(bind=test_engine, class_=AsyncSession),
    )

    assert await registration_tasks.sweep_abandoned_claims() == 1
    assert await registration_tasks.sweep_abandoned_claims() == 0
