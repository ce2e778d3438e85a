"""Category capacity, slot claims and waitlists.

Occupancy counts every row that holds a slot (paid, processing or
awaiting_payment), so in-flight payments cannot oversell a category.
Capacity is checked in the same transaction as the claiming insert, with the
category row locked; abandoned claims are released by a separate sweep.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from libs.common.notifications import Notification, NotificationDispatcher
from services.registrations_service.models import (
    IN_FLIGHT_STATUSES,
    OCCUPYING_STATUSES,
    Registration,
    RegistrationCategory,
    RegistrationPaymentStatus,
    User,
    UserRegistration,
    WaitlistEntry,
)
from services.registrations_service.services.denials import (
    CATEGORY_FULL_MESSAGE,
    DenialReason,
    RegistrationLookupError,
    WaitlistError,
)
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class CategoryAvailability:
    is_open: bool
    spots_remaining: Optional[int]  # None when unbounded


@dataclass(frozen=True)
class SlotClaim:
    claimed: bool
    user_registration: Optional[UserRegistration] = None
    occupancy: int = 0
    max_capacity: Optional[int] = None
    reason: Optional[DenialReason] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CategoryCapacity:
    category_id: uuid.UUID
    name: str
    max_capacity: Optional[int]
    occupancy: int
    paid_count: int
    percentage_full: Optional[float]
    waitlist_count: int
    is_open: bool
    spots_remaining: Optional[int]


# ---------------------------------------------------------------------------
# Occupancy
# ---------------------------------------------------------------------------


def category_availability(
    max_capacity: Optional[int], occupancy: int
) -> CategoryAvailability:
    if max_capacity is None:
        return CategoryAvailability(is_open=True, spots_remaining=None)
    remaining = max(0, max_capacity - occupancy)
    return CategoryAvailability(is_open=occupancy < max_capacity, spots_remaining=remaining)


async def get_category_occupancy(
    db: AsyncSession,
    category_ids: Iterable[uuid.UUID],
    *,
    exclude_in_flight_for: Optional[uuid.UUID] = None,
) -> dict[uuid.UUID, int]:
    """Slot-holding row counts per category; every requested id is present.

    ``exclude_in_flight_for`` leaves out that user's own unpaid claims, which
    a new attempt by the same user would replace.
    """
    ids = list(category_ids)
    counts: dict[uuid.UUID, int] = {cid: 0 for cid in ids}
    if not ids:
        return counts

    query = (
        select(UserRegistration.registration_category_id, func.count())
        .where(
            UserRegistration.registration_category_id.in_(ids),
            UserRegistration.payment_status.in_(OCCUPYING_STATUSES),
        )
        .group_by(UserRegistration.registration_category_id)
    )
    if exclude_in_flight_for is not None:
        query = query.where(
            ~(
                (UserRegistration.user_id == exclude_in_flight_for)
                & UserRegistration.payment_status.in_(IN_FLIGHT_STATUSES)
            )
        )
    result = await db.execute(query)
    for category_id, count in result.all():
        counts[category_id] = count
    return counts


async def _count_occupancy(db: AsyncSession, category_id: uuid.UUID) -> int:
    occupancy = await get_category_occupancy(db, [category_id])
    return occupancy[category_id]


async def _lock_category(
    db: AsyncSession, category_id: uuid.UUID
) -> RegistrationCategory:
    result = await db.execute(
        select(RegistrationCategory)
        .where(RegistrationCategory.id == category_id)
        .with_for_update()
    )
    category = result.scalar_one_or_none()
    if category is None:
        raise RegistrationLookupError("Category not found")
    return category


# ---------------------------------------------------------------------------
# Slot claims
# ---------------------------------------------------------------------------


async def claim_category_slot(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    registration_id: uuid.UUID,
    category_id: uuid.UUID,
    registration_fee: int,
    amount_due: int,
    presale_code: Optional[str] = None,
    discount_code_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
    ttl_minutes: Optional[int] = None,
) -> SlotClaim:
    """Atomically check capacity and insert a ``processing`` claim row.

    The caller's earlier in-flight claims for the same registration are
    failed first, unless one is still attached to a live payment. Every path
    commits, which releases the category lock.
    """
    now = now or utc_now()
    ttl = ttl_minutes or get_settings().REGISTRATION_CLAIM_TTL_MINUTES

    category = await _lock_category(db, category_id)
    if category.registration_id != registration_id:
        raise RegistrationLookupError("Category does not belong to this registration")

    own_claims = await db.execute(
        select(UserRegistration).where(
            UserRegistration.user_id == user_id,
            UserRegistration.registration_id == registration_id,
            UserRegistration.payment_status.in_(IN_FLIGHT_STATUSES),
        )
    )
    for claim in own_claims.scalars().all():
        expires_at = ensure_utc(claim.processing_expires_at)
        live = claim.payment_id is not None and (expires_at is None or expires_at > now)
        if live:
            await db.commit()
            return SlotClaim(
                claimed=False,
                reason=DenialReason.DUPLICATE_REGISTRATION,
                error="A payment for this registration is already in progress",
            )
        claim.payment_status = RegistrationPaymentStatus.FAILED
        claim.processing_expires_at = None
    await db.flush()

    occupancy = await _count_occupancy(db, category_id)
    availability = category_availability(category.max_capacity, occupancy)
    if not availability.is_open:
        await db.commit()
        logger.info(
            "Category %s full (%d/%d)",
            category_id,
            occupancy,
            category.max_capacity,
        )
        return SlotClaim(
            claimed=False,
            occupancy=occupancy,
            max_capacity=category.max_capacity,
            reason=DenialReason.CATEGORY_FULL,
            error=CATEGORY_FULL_MESSAGE,
        )

    user_registration = UserRegistration(
        user_id=user_id,
        registration_id=registration_id,
        registration_category_id=category_id,
        payment_status=RegistrationPaymentStatus.PROCESSING,
        registration_fee=registration_fee,
        amount_paid=amount_due,
        presale_code_used=presale_code,
        discount_code_id=discount_code_id,
        processing_expires_at=now + timedelta(minutes=ttl),
    )
    db.add(user_registration)
    await db.commit()

    logger.info(
        "Claimed slot in category %s for user %s",
        category_id,
        user_id,
        extra={
            "extra_fields": {
                "user_registration_id": str(user_registration.id),
                "occupancy": occupancy + 1,
                "max_capacity": category.max_capacity,
            }
        },
    )
    return SlotClaim(
        claimed=True,
        user_registration=user_registration,
        occupancy=occupancy + 1,
        max_capacity=category.max_capacity,
    )


async def release_abandoned_claims(
    db: AsyncSession, *, now: Optional[datetime] = None
) -> int:
    """Fail in-flight claims whose hold has expired. Safe to run repeatedly."""
    now = now or utc_now()
    result = await db.execute(
        update(UserRegistration)
        .where(
            UserRegistration.payment_status.in_(IN_FLIGHT_STATUSES),
            UserRegistration.processing_expires_at.is_not(None),
            UserRegistration.processing_expires_at < now,
        )
        .values(
            payment_status=RegistrationPaymentStatus.FAILED,
            processing_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    released = result.rowcount or 0
    if released:
        logger.info("Released %d abandoned registration claims", released)
    return released


# ---------------------------------------------------------------------------
# Waitlists
# ---------------------------------------------------------------------------


async def join_waitlist(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    registration_id: uuid.UUID,
    category_id: uuid.UUID,
    discount_code_id: Optional[uuid.UUID] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> WaitlistEntry:
    """Append the user to a full category's waitlist."""
    category = await _lock_category(db, category_id)
    if category.registration_id != registration_id:
        raise RegistrationLookupError("Category does not belong to this registration")

    if category.max_capacity is None:
        await db.commit()
        raise WaitlistError(
            "This category does not have capacity limits and does not require a waitlist"
        )

    occupancy = await _count_occupancy(db, category_id)
    if category_availability(category.max_capacity, occupancy).is_open:
        await db.commit()
        raise WaitlistError(
            "This category is not at capacity. You can register normally."
        )

    existing_registration = await db.execute(
        select(UserRegistration.id).where(
            UserRegistration.user_id == user_id,
            UserRegistration.registration_id == registration_id,
            UserRegistration.payment_status == RegistrationPaymentStatus.PAID,
        )
    )
    if existing_registration.first() is not None:
        await db.commit()
        raise WaitlistError("You are already registered for this event")

    existing_entry = await db.execute(
        select(WaitlistEntry.id).where(
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.registration_id == registration_id,
            WaitlistEntry.category_id == category_id,
            WaitlistEntry.removed_at.is_(None),
        )
    )
    if existing_entry.first() is not None:
        await db.commit()
        raise WaitlistError("You are already on the waitlist for this category")

    max_position = await db.scalar(
        select(func.max(WaitlistEntry.position)).where(
            WaitlistEntry.registration_id == registration_id,
            WaitlistEntry.category_id == category_id,
            WaitlistEntry.removed_at.is_(None),
        )
    )
    entry = WaitlistEntry(
        user_id=user_id,
        registration_id=registration_id,
        category_id=category_id,
        position=(max_position or 0) + 1,
        discount_code_id=discount_code_id,
    )
    db.add(entry)
    await db.commit()

    logger.info(
        "User %s joined waitlist for category %s at position %d",
        user_id,
        category_id,
        entry.position,
    )

    if notifier is not None:
        user = await db.get(User, user_id)
        registration = await db.get(Registration, registration_id)
        if user is not None and registration is not None:
            await notifier.dispatch(
                Notification(
                    template_type="waitlist_joined",
                    to_email=user.email,
                    template_data={
                        "user_name": user.full_name,
                        "registration_name": registration.name,
                        "category_name": category.custom_name,
                        "position": entry.position,
                    },
                    dedupe_key=f"waitlist:{entry.id}",
                )
            )
    return entry


async def remove_from_waitlist(
    db: AsyncSession,
    entry_id: uuid.UUID,
    *,
    user_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> WaitlistEntry:
    """Soft-delete an entry. Remaining positions are left untouched."""
    entry = await db.get(WaitlistEntry, entry_id)
    if entry is None or (user_id is not None and entry.user_id != user_id):
        raise WaitlistError("Waitlist entry not found")
    if entry.removed_at is not None:
        raise WaitlistError("Waitlist entry already removed")

    entry.removed_at = now or utc_now()
    await db.commit()
    return entry


async def get_waitlist(
    db: AsyncSession, registration_id: uuid.UUID, category_id: uuid.UUID
) -> list[WaitlistEntry]:
    result = await db.execute(
        select(WaitlistEntry)
        .where(
            WaitlistEntry.registration_id == registration_id,
            WaitlistEntry.category_id == category_id,
            WaitlistEntry.removed_at.is_(None),
        )
        .order_by(WaitlistEntry.position.asc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


async def category_capacity_report(
    db: AsyncSession, registration_id: uuid.UUID
) -> list[CategoryCapacity]:
    result = await db.execute(
        select(RegistrationCategory)
        .where(RegistrationCategory.registration_id == registration_id)
        .order_by(RegistrationCategory.sort_order.asc())
    )
    categories = list(result.scalars().all())
    ids = [c.id for c in categories]

    occupancy = await get_category_occupancy(db, ids)

    paid_counts: dict[uuid.UUID, int] = {}
    waitlist_counts: dict[uuid.UUID, int] = {}
    if ids:
        paid_result = await db.execute(
            select(UserRegistration.registration_category_id, func.count())
            .where(
                UserRegistration.registration_category_id.in_(ids),
                UserRegistration.payment_status == RegistrationPaymentStatus.PAID,
            )
            .group_by(UserRegistration.registration_category_id)
        )
        paid_counts = dict(paid_result.all())

        waitlist_result = await db.execute(
            select(WaitlistEntry.category_id, func.count())
            .where(
                WaitlistEntry.category_id.in_(ids),
                WaitlistEntry.removed_at.is_(None),
            )
            .group_by(WaitlistEntry.category_id)
        )
        waitlist_counts = dict(waitlist_result.all())

    report = []
    for category in categories:
        count = occupancy[category.id]
        availability = category_availability(category.max_capacity, count)
        percentage = None
        if category.max_capacity:
            percentage = round(count / category.max_capacity * 100, 1)
        report.append(
            CategoryCapacity(
                category_id=category.id,
                name=category.custom_name,
                max_capacity=category.max_capacity,
                occupancy=count,
                paid_count=paid_counts.get(category.id, 0),
                percentage_full=percentage,
                waitlist_count=waitlist_counts.get(category.id, 0),
                is_open=availability.is_open,
                spots_remaining=availability.spots_remaining,
            )
        )
    return report
