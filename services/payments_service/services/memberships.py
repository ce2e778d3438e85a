"""Membership purchases: annual or a number of monthly periods.

A purchase of a membership the user already holds extends it: the new
period starts when the latest paid one ends.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.models import LineItemType
from services.payments_service.services import charges, discounts, staging
from services.payments_service.services.charges import (
    PAYMENT_FAILED_MESSAGE,
    PurchaseOutcome,
    PurchaseStatus,
)
from services.payments_service.services.pricing import compute_price
from services.payments_service.stripe_client import StripeClient
from services.registrations_service.models import (
    Membership,
    MembershipPaymentStatus,
    UserMembership,
)
from services.registrations_service.services.denials import DenialReason
from services.registrations_service.services.validation import (
    validate_payment_method,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ANNUAL_MONTHS = 12
MAX_MONTHS = 12


class MembershipPurchaseError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def membership_price(membership: Membership, months: int) -> int:
    """Annual price for twelve months, otherwise the monthly price per month."""
    if not 1 <= months <= MAX_MONTHS:
        raise MembershipPurchaseError(
            f"Duration must be between 1 and {MAX_MONTHS} months"
        )
    if months == ANNUAL_MONTHS:
        return membership.price_annual
    if not membership.allow_monthly:
        raise MembershipPurchaseError("This membership is only sold annually")
    return membership.price_monthly * months


def membership_end_date(start: date, months: int) -> date:
    # Clamps to the month's last day, so Jan 31 + 1 month is Feb 28/29
    return start + relativedelta(months=months)


async def membership_start_date(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    membership_id: uuid.UUID,
    today: date,
) -> date:
    latest = await db.scalar(
        select(func.max(UserMembership.valid_until)).where(
            UserMembership.user_id == user_id,
            UserMembership.membership_id == membership_id,
            UserMembership.payment_status == MembershipPaymentStatus.PAID,
            UserMembership.valid_until > today,
        )
    )
    return latest or today


async def purchase_membership(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    user_id: uuid.UUID,
    membership_id: uuid.UUID,
    months: int = ANNUAL_MONTHS,
    discount_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseOutcome:
    """Price, stage and charge a membership; free ones complete without Stripe.

    The membership row is created ``pending`` and only becomes ``paid`` when
    the staged record is confirmed.
    """
    now = now or utc_now()
    membership = await db.get(Membership, membership_id)
    if membership is None:
        raise MembershipPurchaseError("Membership not found", status_code=404)

    base = membership_price(membership, months)
    price, staged_discount, discount_message = compute_price(base), None, None
    if discount_code:
        if not membership.allow_discounts:
            raise MembershipPurchaseError(
                "Discount codes cannot be used for this membership"
            )
        resolved = await discounts.resolve_discount_code(db, discount_code, now=now)
        price, staged_discount, discount_message = await charges.apply_discount(
            db, user_id=user_id, base=base, season_id=None, resolved=resolved
        )

    if price.net > 0:
        payment_method = await validate_payment_method(db, user_id)
        if not payment_method.is_valid:
            return PurchaseOutcome(
                status=PurchaseStatus.DENIED,
                price=price,
                reason=DenialReason.INVALID_PAYMENT_METHOD,
                error=payment_method.error,
            )

    valid_from = await membership_start_date(
        db, user_id=user_id, membership_id=membership_id, today=now.date()
    )
    user_membership = UserMembership(
        user_id=user_id,
        membership_id=membership_id,
        valid_from=valid_from,
        valid_until=membership_end_date(valid_from, months),
        payment_status=MembershipPaymentStatus.PENDING,
        months_purchased=months,
        amount_paid=price.net,
        purchased_at=now,
    )
    db.add(user_membership)
    await db.commit()

    description = f"Membership: {membership.name} - {months} months"
    try:
        invoice = await staging.stage_transaction(
            db,
            user_id=user_id,
            amounts=price,
            line_items=[
                staging.StagedLineItem(
                    line_item_type=LineItemType.MEMBERSHIP,
                    description=description,
                    amount=price.gross,
                    account_code=membership.accounting_code,
                    item_id=membership.id,
                )
            ],
            discounts=[staged_discount] if staged_discount else (),
            metadata={
                "user_membership_ids": [str(user_membership.id)],
                "membership_id": str(membership.id),
                "months": months,
            },
        )
    except staging.StagingError:
        user_membership.payment_status = MembershipPaymentStatus.FAILED
        await db.commit()
        return PurchaseOutcome(
            status=PurchaseStatus.FAILED, price=price, error=PAYMENT_FAILED_MESSAGE
        )

    logger.info(
        "Staged membership purchase for user %s",
        user_id,
        extra={
            "extra_fields": {
                "staging_id": str(invoice.id),
                "membership_id": str(membership.id),
                "months": months,
                "valid_from": valid_from.isoformat(),
                "amount": price.net,
            }
        },
    )

    payment_id = await charges.record_payment(
        db,
        staging_id=invoice.id,
        user_id=user_id,
        price=price,
        description=description,
        metadata={
            "membership_id": str(membership.id),
            "user_membership_id": str(user_membership.id),
        },
    )
    user_membership.payment_id = payment_id
    await db.commit()

    return await charges.settle_purchase(
        db,
        stripe,
        notifier,
        staging_id=invoice.id,
        payment_id=payment_id,
        user_id=user_id,
        price=price,
        user_membership_id=user_membership.id,
        discount_message=discount_message,
    )
