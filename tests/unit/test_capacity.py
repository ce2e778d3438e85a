"""Unit tests for category occupancy, slot claims, the claim sweep and waitlists."""

import uuid
from datetime import timedelta

import pytest
from libs.common.datetime_utils import ensure_utc, utc_now
from services.registrations_service.models import RegistrationPaymentStatus
from services.registrations_service.services.capacity import (
    category_availability,
    category_capacity_report,
    claim_category_slot,
    get_category_occupancy,
    get_waitlist,
    join_waitlist,
    release_abandoned_claims,
    remove_from_waitlist,
)
from services.registrations_service.services.denials import (
    CATEGORY_FULL_MESSAGE,
    DenialReason,
    RegistrationLookupError,
    WaitlistError,
)
from tests.factories import (
    UserFactory,
    UserRegistrationFactory,
    seed,
    seed_registration,
)


def _row(registration, category, status, **overrides):
    return UserRegistrationFactory.create(
        registration_id=registration.id,
        category_id=category.id,
        payment_status=status,
        **overrides,
    )


async def _claim(db, user, registration, category, **kwargs):
    return await claim_category_slot(
        db,
        user_id=user.id,
        registration_id=registration.id,
        category_id=category.id,
        registration_fee=category.price,
        amount_due=category.price,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Occupancy
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_category_availability():
    unbounded = category_availability(None, 500)
    assert unbounded.is_open is True
    assert unbounded.spots_remaining is None

    assert category_availability(10, 7).spots_remaining == 3
    full = category_availability(2, 2)
    assert full.is_open is False
    assert full.spots_remaining == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_occupancy_counts_slot_holding_statuses(db_session):
    registration, category = await seed_registration(db_session)
    await seed(
        db_session,
        *[
            _row(registration, category, status)
            for status in (
                RegistrationPaymentStatus.PAID,
                RegistrationPaymentStatus.PROCESSING,
                RegistrationPaymentStatus.AWAITING_PAYMENT,
                RegistrationPaymentStatus.FAILED,
                RegistrationPaymentStatus.REFUNDED,
            )
        ],
    )
    empty_category = uuid.uuid4()

    occupancy = await get_category_occupancy(db_session, [category.id, empty_category])

    assert occupancy == {category.id: 3, empty_category: 0}


# ---------------------------------------------------------------------------
# Slot claims
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_awaiting_payment_rows_fill_a_category(db_session):
    """Two unpaid claims fill a capacity-2 category."""
    user = UserFactory.create()
    registration, category = await seed_registration(db_session, max_capacity=2)
    await seed(
        db_session,
        user,
        _row(registration, category, RegistrationPaymentStatus.AWAITING_PAYMENT),
        _row(registration, category, RegistrationPaymentStatus.AWAITING_PAYMENT),
    )

    claim = await _claim(db_session, user, registration, category)

    assert claim.claimed is False
    assert claim.reason == DenialReason.CATEGORY_FULL
    assert claim.error == CATEGORY_FULL_MESSAGE
    assert claim.occupancy == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claims_never_exceed_capacity(db_session):
    capacity = 3
    registration, category = await seed_registration(
        db_session, max_capacity=capacity
    )
    users = [UserFactory.create() for _ in range(capacity + 2)]
    await seed(db_session, *users)

    results = [await _claim(db_session, u, registration, category) for u in users]

    assert [r.claimed for r in results] == [True] * capacity + [False, False]
    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == capacity


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_inserts_processing_row_with_expiry(db_session):
    user = UserFactory.create()
    registration, category = await seed_registration(db_session)
    await seed(db_session, user)
    now = utc_now()

    claim = await _claim(
        db_session, user, registration, category, now=now, ttl_minutes=7
    )

    row = claim.user_registration
    assert claim.claimed is True
    assert row.payment_status == RegistrationPaymentStatus.PROCESSING
    assert ensure_utc(row.processing_expires_at) == now + timedelta(minutes=7)
    assert row.registration_fee == category.price


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_replaces_callers_abandoned_claim(db_session):
    user = UserFactory.create()
    registration, category = await seed_registration(db_session, max_capacity=1)
    await seed(db_session, user)

    first = await _claim(db_session, user, registration, category)
    second = await _claim(db_session, user, registration, category)

    assert second.claimed is True
    await db_session.refresh(first.user_registration)
    assert first.user_registration.payment_status == RegistrationPaymentStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_with_live_payment_is_duplicate(db_session):
    user = UserFactory.create()
    registration, category = await seed_registration(db_session)
    await seed(
        db_session,
        user,
        _row(
            registration,
            category,
            RegistrationPaymentStatus.AWAITING_PAYMENT,
            user_id=user.id,
            payment_id=uuid.uuid4(),
            processing_expires_at=None,
        ),
    )

    claim = await _claim(db_session, user, registration, category)

    assert claim.claimed is False
    assert claim.reason == DenialReason.DUPLICATE_REGISTRATION


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_for_category_of_other_registration_raises(db_session):
    user = UserFactory.create()
    registration, _ = await seed_registration(db_session)
    _, other_category = await seed_registration(db_session)
    await seed(db_session, user)

    with pytest.raises(RegistrationLookupError):
        await _claim(db_session, user, registration, other_category)


# ---------------------------------------------------------------------------
# Abandoned claim sweep
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_sweep_releases_only_expired_claims(db_session):
    registration, category = await seed_registration(db_session, max_capacity=2)
    now = utc_now()
    expired = _row(
        registration,
        category,
        RegistrationPaymentStatus.PROCESSING,
        processing_expires_at=now - timedelta(minutes=1),
    )
    live = _row(
        registration,
        category,
        RegistrationPaymentStatus.PROCESSING,
        processing_expires_at=now + timedelta(minutes=4),
    )
    paid = _row(registration, category, RegistrationPaymentStatus.PAID)
    await seed(db_session, expired, live, paid)

    released = await release_abandoned_claims(db_session, now=now)
    again = await release_abandoned_claims(db_session, now=now)

    assert released == 1
    assert again == 0
    for row in (expired, live, paid):
        await db_session.refresh(row)
    assert expired.payment_status == RegistrationPaymentStatus.FAILED
    assert expired.processing_expires_at is None
    assert live.payment_status == RegistrationPaymentStatus.PROCESSING
    assert paid.payment_status == RegistrationPaymentStatus.PAID

    occupancy = await get_category_occupancy(db_session, [category.id])
    assert occupancy[category.id] == 2


# ---------------------------------------------------------------------------
# Waitlists
# ---------------------------------------------------------------------------


async def _full_category(db, capacity=1):
    registration, category = await seed_registration(db, max_capacity=capacity)
    await seed(
        db,
        *[
            _row(registration, category, RegistrationPaymentStatus.PAID)
            for _ in range(capacity)
        ],
    )
    return registration, category


async def _join(db, user, registration, category, **kwargs):
    return await join_waitlist(
        db,
        user_id=user.id,
        registration_id=registration.id,
        category_id=category.id,
        **kwargs,
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_waitlist_requires_a_full_bounded_category(db_session):
    user = UserFactory.create()
    await seed(db_session, user)
    open_registration, open_category = await seed_registration(
        db_session, max_capacity=5
    )
    unbounded_registration, unbounded_category = await seed_registration(db_session)

    with pytest.raises(WaitlistError, match="not at capacity"):
        await _join(db_session, user, open_registration, open_category)
    with pytest.raises(WaitlistError, match="does not have capacity limits"):
        await _join(db_session, user, unbounded_registration, unbounded_category)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_waitlist_positions_and_notification(db_session, notifier):
    first, second = UserFactory.create(), UserFactory.create()
    await seed(db_session, first, second)
    registration, category = await _full_category(db_session)

    entry_one = await _join(db_session, first, registration, category, notifier=notifier)
    entry_two = await _join(db_session, second, registration, category)

    assert (entry_one.position, entry_two.position) == (1, 2)
    [sent] = notifier.of_type("waitlist_joined")
    assert sent.to_email == first.email
    assert sent.template_data["position"] == 1
    assert sent.dedupe_key == f"waitlist:{entry_one.id}"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_waitlist_rejects_duplicates_and_registered_users(db_session):
    user = UserFactory.create()
    await seed(db_session, user)
    registration, category = await _full_category(db_session)

    await _join(db_session, user, registration, category)
    with pytest.raises(WaitlistError, match="already on the waitlist"):
        await _join(db_session, user, registration, category)

    registered = UserFactory.create()
    await seed(
        db_session,
        registered,
        _row(
            registration,
            category,
            RegistrationPaymentStatus.PAID,
            user_id=registered.id,
        ),
    )
    with pytest.raises(WaitlistError, match="already registered"):
        await _join(db_session, registered, registration, category)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_removal_is_soft_and_keeps_positions(db_session):
    users = [UserFactory.create() for _ in range(3)]
    await seed(db_session, *users)
    registration, category = await _full_category(db_session)
    entries = [await _join(db_session, u, registration, category) for u in users]

    removed = await remove_from_waitlist(db_session, entries[1].id, user_id=users[1].id)

    assert removed.removed_at is not None
    remaining = await get_waitlist(db_session, registration.id, category.id)
    assert [e.position for e in remaining] == [1, 3]

    with pytest.raises(WaitlistError):
        await remove_from_waitlist(db_session, entries[1].id)
    with pytest.raises(WaitlistError):
        await remove_from_waitlist(db_session, entries[0].id, user_id=users[2].id)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_capacity_report(db_session):
    user = UserFactory.create()
    await seed(db_session, user)
    registration, category = await _full_category(db_session, capacity=2)
    await _join(db_session, user, registration, category)

    [row] = await category_capacity_report(db_session, registration.id)

    assert row.category_id == category.id
    assert row.occupancy == 2
    assert row.paid_count == 2
    assert row.percentage_full == 100.0
    assert row.waitlist_count == 1
    assert row.is_open is False
    assert row.spots_remaining == 0
