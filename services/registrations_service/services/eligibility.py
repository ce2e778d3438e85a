"""Membership eligibility for registrations.

A registration and each of its categories may name a required membership
type. The two requirements are alternatives: an active paid membership of
either type admits the user. With no requirement at either level everyone is
eligible.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from libs.common.datetime_utils import utc_today
from libs.common.logging import get_logger
from services.registrations_service.models import (
    Membership,
    MembershipPaymentStatus,
    Season,
    UserMembership,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

SOURCE_REGISTRATION = "registration"
SOURCE_CATEGORY = "category"
SOURCE_NONE = "none"

NO_MEMBERSHIP_REQUIRED = "No membership required"


class MembershipRecord(Protocol):
    membership_id: uuid.UUID
    valid_from: date
    valid_until: date
    payment_status: MembershipPaymentStatus


@dataclass(frozen=True)
class MembershipEligibility:
    eligible: bool
    source: Optional[str] = None
    matched_membership_id: Optional[uuid.UUID] = None
    matched_membership_name: Optional[str] = None
    unmet: tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass
class ConsolidatedMembership:
    """One merged validity window per membership type."""

    membership_id: uuid.UUID
    valid_from: date
    valid_until: date
    purchases: list = field(default_factory=list)


@dataclass(frozen=True)
class MembershipStatus:
    status: str  # not_owned | expired | expiring_soon | active
    label: str
    days_until_expiration: Optional[int] = None
    valid_until: Optional[date] = None


@dataclass(frozen=True)
class MembershipCoverage:
    is_valid: bool
    membership_name: Optional[str] = None
    valid_until: Optional[date] = None
    season_end_date: Optional[date] = None
    months_needed: Optional[int] = None
    days_short: Optional[int] = None


# ---------------------------------------------------------------------------
# Requirement matching
# ---------------------------------------------------------------------------


def is_membership_active(record: MembershipRecord, today: date) -> bool:
    """Paid and valid through ``today`` (inclusive)."""
    return (
        record.payment_status == MembershipPaymentStatus.PAID
        and record.valid_until >= today
    )


def _decide(
    registration_membership_id: Optional[uuid.UUID],
    category_membership_id: Optional[uuid.UUID],
    active_membership_ids: set[uuid.UUID],
) -> MembershipEligibility:
    if registration_membership_id is None and category_membership_id is None:
        return MembershipEligibility(
            eligible=True,
            source=SOURCE_NONE,
            matched_membership_name=NO_MEMBERSHIP_REQUIRED,
        )

    if registration_membership_id in active_membership_ids:
        return MembershipEligibility(
            eligible=True,
            source=SOURCE_REGISTRATION,
            matched_membership_id=registration_membership_id,
        )
    if category_membership_id in active_membership_ids:
        return MembershipEligibility(
            eligible=True,
            source=SOURCE_CATEGORY,
            matched_membership_id=category_membership_id,
        )

    unmet = []
    if registration_membership_id is not None:
        unmet.append(SOURCE_REGISTRATION)
    if category_membership_id is not None:
        unmet.append(SOURCE_CATEGORY)
    requirement_text = " or ".join(f"{level}-level membership" for level in unmet)
    return MembershipEligibility(
        eligible=False,
        unmet=tuple(unmet),
        error=f"You need {requirement_text} to register for this event",
    )


def check_membership_eligibility(
    registration_membership_id: Optional[uuid.UUID],
    category_membership_id: Optional[uuid.UUID],
    user_memberships: Iterable[MembershipRecord],
    *,
    today: Optional[date] = None,
    membership_names: Optional[Mapping[uuid.UUID, str]] = None,
) -> MembershipEligibility:
    """Decide whether ``user_memberships`` satisfy either requirement.

    Pure: the caller supplies the user's membership rows. A registration-level
    match is reported ahead of a category-level one.
    """
    today = today or utc_today()
    active_ids = {
        m.membership_id for m in user_memberships if is_membership_active(m, today)
    }
    result = _decide(registration_membership_id, category_membership_id, active_ids)
    if result.eligible and result.matched_membership_id and membership_names:
        return MembershipEligibility(
            eligible=True,
            source=result.source,
            matched_membership_id=result.matched_membership_id,
            matched_membership_name=membership_names.get(
                result.matched_membership_id, "Unknown"
            ),
        )
    return result


def _join_names(names: Sequence[str]) -> str:
    if not names:
        return "required membership"
    if len(names) == 1:
        return names[0]
    return f"{', '.join(names[:-1])} or {names[-1]}"


async def check_membership_eligibility_for_user(
    db: AsyncSession,
    registration_membership_id: Optional[uuid.UUID],
    category_membership_id: Optional[uuid.UUID],
    user_id: uuid.UUID,
    *,
    today: Optional[date] = None,
) -> MembershipEligibility:
    """Load the user's active memberships and apply the same decision.

    Denials name the qualifying membership types.
    """
    if registration_membership_id is None and category_membership_id is None:
        return _decide(None, None, set())

    today = today or utc_today()
    result = await db.execute(
        select(UserMembership.membership_id).where(
            UserMembership.user_id == user_id,
            UserMembership.payment_status == MembershipPaymentStatus.PAID,
            UserMembership.valid_until >= today,
        )
    )
    active_ids = set(result.scalars().all())
    decision = _decide(registration_membership_id, category_membership_id, active_ids)

    required_ids = [
        i for i in (registration_membership_id, category_membership_id) if i
    ]
    names_result = await db.execute(
        select(Membership.id, Membership.name).where(Membership.id.in_(required_ids))
    )
    names = dict(names_result.all())

    if decision.eligible:
        return MembershipEligibility(
            eligible=True,
            source=decision.source,
            matched_membership_id=decision.matched_membership_id,
            matched_membership_name=names.get(
                decision.matched_membership_id, "Unknown"
            ),
        )

    ordered_names = []
    for membership_id in required_ids:
        name = names.get(membership_id)
        if name and name not in ordered_names:
            ordered_names.append(name)

    logger.info(
        "Membership requirement not met",
        extra={
            "extra_fields": {
                "user_id": str(user_id),
                "unmet": list(decision.unmet),
            }
        },
    )
    return MembershipEligibility(
        eligible=False,
        unmet=decision.unmet,
        error=(
            f"You need a {_join_names(ordered_names)} membership "
            "to register for this event"
        ),
    )


# ---------------------------------------------------------------------------
# Read-time consolidation and status
# ---------------------------------------------------------------------------


def consolidate_user_memberships(
    rows: Iterable[MembershipRecord], *, today: Optional[date] = None
) -> list[ConsolidatedMembership]:
    """Merge paid, currently valid rows into one window per membership type."""
    today = today or utc_today()
    consolidated: dict[uuid.UUID, ConsolidatedMembership] = {}

    for row in rows:
        if row.payment_status != MembershipPaymentStatus.PAID:
            continue
        if row.valid_until <= today:
            continue

        entry = consolidated.get(row.membership_id)
        if entry is None:
            entry = ConsolidatedMembership(
                membership_id=row.membership_id,
                valid_from=row.valid_from,
                valid_until=row.valid_until,
            )
            consolidated[row.membership_id] = entry
        entry.valid_from = min(entry.valid_from, row.valid_from)
        entry.valid_until = max(entry.valid_until, row.valid_until)
        entry.purchases.append(row)

    return list(consolidated.values())


def get_membership_status(
    membership_id: uuid.UUID,
    rows: Iterable[MembershipRecord],
    *,
    today: Optional[date] = None,
    expiring_soon_days: int = 90,
) -> MembershipStatus:
    today = today or utc_today()
    paid = [
        r
        for r in rows
        if r.payment_status == MembershipPaymentStatus.PAID
        and r.membership_id == membership_id
    ]
    if not paid:
        return MembershipStatus(status="not_owned", label="Available")

    latest = max(r.valid_until for r in paid)
    if latest <= today:
        return MembershipStatus(status="expired", label="Expired", valid_until=latest)

    days = (latest - today).days
    if days <= expiring_soon_days:
        return MembershipStatus(
            status="expiring_soon",
            label="Expiring Soon",
            days_until_expiration=days,
            valid_until=latest,
        )
    return MembershipStatus(
        status="active",
        label="Active",
        days_until_expiration=days,
        valid_until=latest,
    )


# ---------------------------------------------------------------------------
# Season coverage
# ---------------------------------------------------------------------------


def validate_membership_coverage(
    required_membership_id: uuid.UUID,
    rows: Iterable[MembershipRecord],
    season: Season,
    *,
    membership_name: Optional[str] = None,
) -> MembershipCoverage:
    """Check that the latest matching membership lasts through the season end."""
    matching = [
        r
        for r in rows
        if r.membership_id == required_membership_id
        and r.payment_status == MembershipPaymentStatus.PAID
    ]
    if not matching:
        return MembershipCoverage(is_valid=False, season_end_date=season.end_date)

    latest = max(matching, key=lambda r: r.valid_until)
    if latest.valid_until >= season.end_date:
        return MembershipCoverage(
            is_valid=True,
            membership_name=membership_name,
            valid_until=latest.valid_until,
        )

    days_short = (season.end_date - latest.valid_until).days
    return MembershipCoverage(
        is_valid=False,
        membership_name=membership_name,
        valid_until=latest.valid_until,
        season_end_date=season.end_date,
        months_needed=math.ceil(days_short / 30),
        days_short=days_short,
    )


def format_membership_warning(coverage: MembershipCoverage) -> str:
    if coverage.is_valid:
        return ""
    if not coverage.membership_name:
        return "You need a membership to register for this category."

    months_text = "month" if coverage.months_needed == 1 else "months"
    days_text = "day" if coverage.days_short == 1 else "days"
    return (
        f"Your {coverage.membership_name} expires {coverage.days_short} {days_text} "
        "before the season ends. You'll need to extend your membership by at least "
        f"{coverage.months_needed} {months_text} to cover the full season."
    )
