"""Unit tests for the registration purchase flow against a fake Stripe client."""

import uuid

import pytest
from services.payments_service.models import (
    LineItemType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    SyncStatus,
)
from services.payments_service.services import staging
from services.payments_service.services.charges import (
    PAYMENT_FAILED_MESSAGE,
    PurchaseStatus,
    purchase_registration,
)
from services.payments_service.services.discounts import DiscountCodeError
from services.payments_service.services.reconciliation import handle_stripe_event
from services.registrations_service.models import (
    RegistrationPaymentStatus,
    UserRegistration,
)
from services.registrations_service.services.capacity import get_category_occupancy
from services.registrations_service.services.denials import (
    DenialReason,
    RegistrationLookupError,
)
from sqlalchemy import func, select
from tests.factories import (
    DiscountCategoryFactory,
    DiscountCodeFactory,
    SeasonFactory,
    UserFactory,
    UserRegistrationFactory,
    seed,
    seed_registration,
)


async def _buyer(db, **registration_kwargs):
    user = UserFactory.create()
    await seed(db, user)
    registration, category = await seed_registration(db, **registration_kwargs)
    return user, registration, category


async def _purchase(db, stripe, notifier, user, registration, category, **kwargs):
    return await purchase_registration(
        db,
        stripe,
        notifier,
        user_id=user.id,
        registration_id=registration.id,
        category_id=category.id,
        **kwargs,
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_successful_purchase(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.COMPLETED
    assert outcome.price.net == 5000

    [charge] = stripe.charges
    assert charge["amount"] == 5000
    assert charge["customer_id"] == user.stripe_customer_id
    assert charge["idempotency_key"] == f"charge:{outcome.staging_id}"
    assert charge["metadata"]["staging_id"] == str(outcome.staging_id)

    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.stripe_payment_intent_id.startswith("pi_")

    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.PAID
    assert row.payment_id == payment.id

    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.PENDING
    assert invoice.payment_id == payment.id

    [sent] = notifier.sent
    assert sent.template_type == "registration_confirmation"
    assert sent.template_data["registration_name"] == "Spring League"
    assert sent.template_data["category_name"] == "Player"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_purchase_with_discount_code(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)
    discount_category = DiscountCategoryFactory.create()
    code = DiscountCodeFactory.create(
        category_id=discount_category.id, code="SPRING20", percentage=20
    )
    await seed(db_session, discount_category, code)

    outcome = await _purchase(
        db_session,
        stripe,
        notifier,
        user,
        registration,
        category,
        discount_code="spring20",
    )

    assert outcome.status == PurchaseStatus.COMPLETED
    assert (outcome.price.gross, outcome.price.discount, outcome.price.net) == (
        5000,
        1000,
        4000,
    )
    assert stripe.charges[0]["amount"] == 4000

    lines = await staging.get_line_items(db_session, outcome.staging_id)
    assert [(l.line_item_type, l.line_amount) for l in lines] == [
        (LineItemType.REGISTRATION, 5000),
        (LineItemType.DISCOUNT, -1000),
    ]
    assert lines[1].account_code == "4900"

    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.discount_code_id == code.id


@pytest.mark.asyncio
@pytest.mark.unit
async def test_full_discount_skips_stripe(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)
    discount_category = DiscountCategoryFactory.create()
    code = DiscountCodeFactory.create(
        category_id=discount_category.id, code="FREEBIE", percentage=100
    )
    await seed(db_session, discount_category, code)

    outcome = await _purchase(
        db_session,
        stripe,
        notifier,
        user,
        registration,
        category,
        discount_code="FREEBIE",
    )

    assert outcome.status == PurchaseStatus.COMPLETED
    assert outcome.price.is_zero_dollar
    assert stripe.charges == []

    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.COMPLETED
    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.payment_method == PaymentMethod.FREE
    assert payment.status == PaymentStatus.COMPLETED
    assert len(notifier.of_type("registration_confirmation")) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_partial_seasonal_discount_is_reported(db_session, stripe, notifier):
    season = SeasonFactory.create()
    await seed(db_session, season)
    user, registration, category = await _buyer(db_session, season_id=season.id)
    discount_category = DiscountCategoryFactory.create(
        max_discount_per_user_per_season=500
    )
    code = DiscountCodeFactory.create(category_id=discount_category.id, percentage=20)
    await seed(db_session, discount_category, code)

    outcome = await _purchase(
        db_session,
        stripe,
        notifier,
        user,
        registration,
        category,
        discount_code=code.code,
    )

    assert outcome.price.discount == 500
    assert outcome.price.net == 4500
    assert outcome.discount_message.startswith("Applied $5.00 discount")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_invalid_discount_code_raises(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)

    with pytest.raises(DiscountCodeError):
        await _purchase(
            db_session,
            stripe,
            notifier,
            user,
            registration,
            category,
            discount_code="NOPE",
        )
    assert stripe.charges == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_error_rolls_back(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session, max_capacity=1)
    stripe.fail_with("Your card was declined.")

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.FAILED
    assert outcome.error == PAYMENT_FAILED_MESSAGE

    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.FAILED
    assert "declined" in invoice.sync_error
    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.status == PaymentStatus.FAILED
    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.FAILED

    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == 0
    assert notifier.sent == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_declined_status_rolls_back(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)
    stripe.charge_status = "requires_payment_method"

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.FAILED
    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_processing_charge_holds_the_slot(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session, max_capacity=1)
    stripe.charge_status = "processing"

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.PROCESSING
    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.AWAITING_PAYMENT
    assert row.processing_expires_at is None
    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.STAGED
    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert notifier.sent == []

    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_already_registered_user_is_denied(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)
    await seed(
        db_session,
        UserRegistrationFactory.create(
            user_id=user.id, registration_id=registration.id, category_id=category.id
        ),
    )

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.DENIED
    assert outcome.reason == DenialReason.DUPLICATE_REGISTRATION
    assert outcome.staging_id is None
    assert stripe.charges == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refunded_user_can_register_again(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session)
    await seed(
        db_session,
        UserRegistrationFactory.create(
            user_id=user.id,
            registration_id=registration.id,
            category_id=category.id,
            payment_status=RegistrationPaymentStatus.REFUNDED,
        ),
    )

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_full_category_is_denied(db_session, stripe, notifier):
    user, registration, category = await _buyer(db_session, max_capacity=1)
    await seed(
        db_session,
        UserRegistrationFactory.create(
            registration_id=registration.id, category_id=category.id
        ),
    )

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.DENIED
    assert outcome.reason == DenialReason.CATEGORY_FULL
    assert stripe.charges == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_registration_or_category_raises(db_session, stripe, notifier):
    user, registration, _ = await _buyer(db_session)
    _, foreign_category = await seed_registration(db_session)

    with pytest.raises(RegistrationLookupError, match="Registration not found"):
        await purchase_registration(
            db_session,
            stripe,
            notifier,
            user_id=user.id,
            registration_id=uuid.uuid4(),
            category_id=foreign_category.id,
        )
    with pytest.raises(RegistrationLookupError, match="Category not found"):
        await _purchase(
            db_session, stripe, notifier, user, registration, foreign_category
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stripe_timeout_holds_the_claim_for_reconciliation(
    db_session, stripe, notifier
):
    user, registration, category = await _buyer(db_session, max_capacity=1)
    stripe.fail_with("Stripe request failed: timed out", status_code=None)

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.PROCESSING
    invoice = await staging.get_staging_record(db_session, outcome.staging_id)
    assert invoice.sync_status == SyncStatus.STAGED
    assert invoice.sync_error is None
    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.stripe_payment_intent_id is None
    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.AWAITING_PAYMENT
    assert row.processing_expires_at is None
    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == 1

    # The charge did go through; Stripe's webhook finishes the purchase.
    event = {
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_after_timeout",
                "status": "succeeded",
                "amount": 5000,
                "metadata": {"staging_id": str(outcome.staging_id)},
            }
        },
    }
    assert await handle_stripe_event(db_session, event, notifier=notifier) == (
        "confirmed"
    )
    await db_session.refresh(payment)
    await db_session.refresh(row)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.stripe_payment_intent_id == "pi_after_timeout"
    assert row.payment_status == RegistrationPaymentStatus.PAID


@pytest.mark.asyncio
@pytest.mark.unit
async def test_staging_failure_releases_claim_without_charging(
    db_session, stripe, notifier, monkeypatch
):
    user, registration, category = await _buyer(db_session, max_capacity=1)

    async def failing_stage(*args, **kwargs):
        raise staging.StagingError("Failed to stage transaction")

    monkeypatch.setattr(staging, "stage_transaction", failing_stage)

    outcome = await _purchase(db_session, stripe, notifier, user, registration, category)

    assert outcome.status == PurchaseStatus.FAILED
    assert outcome.error == PAYMENT_FAILED_MESSAGE
    assert outcome.staging_id is None
    assert stripe.charges == []
    assert await db_session.scalar(select(func.count(Payment.id))) == 0

    [row] = (
        await db_session.execute(
            select(UserRegistration).where(UserRegistration.user_id == user.id)
        )
    ).scalars().all()
    assert row.payment_status == RegistrationPaymentStatus.FAILED
    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == 0
    assert notifier.sent == []
