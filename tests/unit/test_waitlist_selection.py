"""Unit tests for selecting waitlisted players into a registration."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from services.payments_service.models import (
    AccountingLineItem,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from services.payments_service.services.charges import PurchaseStatus
from services.payments_service.services.waitlist import (
    WaitlistSelectionError,
    select_from_waitlist,
)
from services.registrations_service.models import (
    RegistrationPaymentStatus,
    UserRegistration,
    WaitlistEntry,
)
from services.registrations_service.services.denials import DenialReason
from sqlalchemy import select
from tests.factories import (
    DiscountCategoryFactory,
    DiscountCodeFactory,
    UserFactory,
    UserRegistrationFactory,
    seed,
    seed_registration,
)


async def _waitlisted(db, *, discount_code_id=None, price=5000, **user_overrides):
    user = UserFactory.create(**user_overrides)
    await seed(db, user)
    registration, category = await seed_registration(db, price=price, max_capacity=1)
    holder = UserFactory.create()
    await seed(
        db,
        holder,
        UserRegistrationFactory.create(
            user_id=holder.id,
            registration_id=registration.id,
            category_id=category.id,
        ),
    )
    entry = WaitlistEntry(
        user_id=user.id,
        registration_id=registration.id,
        category_id=category.id,
        position=1,
        discount_code_id=discount_code_id,
    )
    await seed(db, entry)
    return user, registration, category, entry


async def _saved_code(db, **overrides):
    discount_category = DiscountCategoryFactory.create()
    code = DiscountCodeFactory.create(category_id=discount_category.id, **overrides)
    await seed(db, discount_category, code)
    return code


@pytest.mark.asyncio
@pytest.mark.unit
async def test_selection_registers_and_charges_past_capacity(
    db_session, stripe, notifier
):
    user, registration, category, entry = await _waitlisted(db_session)
    admin_id = uuid.uuid4()

    outcome = await select_from_waitlist(
        db_session, stripe, notifier, entry_id=entry.id, selected_by=admin_id
    )

    assert outcome.status == PurchaseStatus.COMPLETED
    [charge] = stripe.charges
    assert charge["amount"] == 5000
    assert charge["metadata"]["waitlist_entry_id"] == str(entry.id)

    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.PAID
    assert row.registration_category_id == category.id

    [line] = (
        await db_session.execute(
            select(AccountingLineItem).where(
                AccountingLineItem.invoice_id == outcome.staging_id
            )
        )
    ).scalars().all()
    assert line.description == "Waitlist: Spring League - Player"
    assert line.account_code == category.accounting_code

    await db_session.refresh(entry)
    assert entry.removed_at is not None
    assert entry.selected_by == admin_id

    assert [n.template_type for n in notifier.sent] == [
        "registration_confirmation",
        "waitlist_selected",
    ]
    [selected] = notifier.of_type("waitlist_selected")
    assert selected.to_email == user.email
    assert selected.dedupe_key == f"waitlist_selected:{entry.id}"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_saved_discount_applies_to_override_price(db_session, stripe, notifier):
    code = await _saved_code(db_session, percentage=20)
    _, _, _, entry = await _waitlisted(db_session, discount_code_id=code.id)

    outcome = await select_from_waitlist(
        db_session, stripe, notifier, entry_id=entry.id, override_price=3000
    )

    assert outcome.status == PurchaseStatus.COMPLETED
    assert (outcome.price.gross, outcome.price.discount, outcome.price.net) == (
        3000,
        600,
        2400,
    )
    assert stripe.charges[0]["amount"] == 2400
    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.discount_code_id == code.id
    assert row.registration_fee == 3000


@pytest.mark.asyncio
@pytest.mark.unit
async def test_expired_saved_discount_is_dropped(db_session, stripe, notifier):
    code = await _saved_code(
        db_session, valid_until=datetime.now(timezone.utc) - timedelta(days=1)
    )
    _, _, _, entry = await _waitlisted(db_session, discount_code_id=code.id)

    outcome = await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    assert outcome.status == PurchaseStatus.COMPLETED
    assert outcome.price.discount == 0
    assert stripe.charges[0]["amount"] == 5000


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payment_method_checked_after_discount(db_session, stripe, notifier):
    code = await _saved_code(db_session, percentage=100)
    _, _, _, entry = await _waitlisted(
        db_session, discount_code_id=code.id, stripe_payment_method_id=None
    )

    outcome = await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    assert outcome.status == PurchaseStatus.COMPLETED
    assert outcome.price.net == 0
    assert stripe.charges == []
    payment = await db_session.get(Payment, outcome.payment_id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.payment_method == PaymentMethod.FREE


@pytest.mark.asyncio
@pytest.mark.unit
async def test_missing_payment_method_denies_and_keeps_entry(
    db_session, stripe, notifier
):
    _, _, _, entry = await _waitlisted(db_session, stripe_payment_method_id=None)

    outcome = await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    assert outcome.status == PurchaseStatus.DENIED
    assert outcome.reason == DenialReason.INVALID_PAYMENT_METHOD
    assert stripe.charges == []
    await db_session.refresh(entry)
    assert entry.removed_at is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_already_registered_player_is_denied(db_session, stripe, notifier):
    user, registration, category, entry = await _waitlisted(db_session)
    await seed(
        db_session,
        UserRegistrationFactory.create(
            user_id=user.id,
            registration_id=registration.id,
            category_id=category.id,
        ),
    )

    outcome = await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    assert outcome.status == PurchaseStatus.DENIED
    assert outcome.reason == DenialReason.DUPLICATE_REGISTRATION


@pytest.mark.asyncio
@pytest.mark.unit
async def test_declined_card_keeps_entry_on_waitlist(db_session, stripe, notifier):
    _, _, _, entry = await _waitlisted(db_session)
    stripe.fail_with("Your card was declined.")

    outcome = await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    assert outcome.status == PurchaseStatus.FAILED
    row = await db_session.get(UserRegistration, outcome.user_registration_id)
    assert row.payment_status == RegistrationPaymentStatus.FAILED
    await db_session.refresh(entry)
    assert entry.removed_at is None
    assert notifier.of_type("waitlist_selected") == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_override_price_above_category_price_is_rejected(
    db_session, stripe, notifier
):
    _, _, _, entry = await _waitlisted(db_session)

    with pytest.raises(WaitlistSelectionError) as exc:
        await select_from_waitlist(
            db_session, stripe, notifier, entry_id=entry.id, override_price=6000
        )

    assert exc.value.status_code == 400
    assert exc.value.message == "Override price must be between $0.00 and $50.00"
    assert stripe.charges == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_processed_or_missing_entry_is_rejected(db_session, stripe, notifier):
    _, _, _, entry = await _waitlisted(db_session)
    await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)

    with pytest.raises(WaitlistSelectionError) as exc:
        await select_from_waitlist(db_session, stripe, notifier, entry_id=entry.id)
    assert exc.value.status_code == 400

    with pytest.raises(WaitlistSelectionError) as exc:
        await select_from_waitlist(
            db_session, stripe, notifier, entry_id=uuid.uuid4()
        )
    assert exc.value.status_code == 404
    assert len(stripe.charges) == 1
