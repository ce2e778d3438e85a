"""Discount code lookup and the per-season discount cap.

Seasonal usage is derived from staged accounting line items rather than a
separate counter. Every line tagged with a code from the category counts
against the user's season limit unless its record failed or was ignored:
invoice discounts and discount-code refunds add to usage, proportional
refunds of a discounted purchase give the reversed share back.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.currency import format_cents
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.payments_service.models import (
    AccountingInvoice,
    AccountingLineItem,
    DiscountCategory,
    DiscountCode,
    InvoiceType,
    SyncStatus,
)
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Records in these states no longer represent money movement
_VOID_SYNC_STATUSES = (SyncStatus.FAILED, SyncStatus.IGNORE)

# Invoice discount lines are negative; credit-note lines are credits to the
# user, so a reversed discount share is negative there and reduces usage.
_usage_amount = case(
    (
        AccountingInvoice.invoice_type == InvoiceType.INVOICE,
        -AccountingLineItem.line_amount,
    ),
    else_=AccountingLineItem.line_amount,
)


class DiscountCodeError(ValueError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class ResolvedDiscount:
    code: DiscountCode
    category: DiscountCategory


@dataclass(frozen=True)
class SeasonalUsage:
    total_used: int
    remaining: int
    max_allowed: int


@dataclass(frozen=True)
class DiscountLimitResult:
    original_amount: int
    final_amount: int
    is_partial_discount: bool
    message: Optional[str] = None
    usage: Optional[SeasonalUsage] = None


async def resolve_discount_code(
    db: AsyncSession, code: str, *, now: Optional[datetime] = None
) -> ResolvedDiscount:
    """Look up a code (case-insensitive) and check it can be used right now."""
    now = now or utc_now()
    normalized = (code or "").strip().upper()
    if not normalized:
        raise DiscountCodeError("Invalid discount code")

    result = await db.execute(
        select(DiscountCode).where(func.upper(DiscountCode.code) == normalized)
    )
    discount_code = result.scalar_one_or_none()
    if discount_code is None:
        raise DiscountCodeError("Invalid discount code")
    return await _usable(db, discount_code, now)


async def resolve_discount_code_by_id(
    db: AsyncSession, discount_code_id: uuid.UUID, *, now: Optional[datetime] = None
) -> ResolvedDiscount:
    """Re-check a code saved earlier, e.g. on a waitlist entry."""
    discount_code = await db.get(DiscountCode, discount_code_id)
    if discount_code is None:
        raise DiscountCodeError("Invalid discount code")
    return await _usable(db, discount_code, now or utc_now())


async def _usable(
    db: AsyncSession, discount_code: DiscountCode, now: datetime
) -> ResolvedDiscount:
    category = await db.get(DiscountCategory, discount_code.category_id)
    if not discount_code.is_active or category is None or not category.is_active:
        raise DiscountCodeError("Discount code is not active")

    valid_from = ensure_utc(discount_code.valid_from)
    valid_until = ensure_utc(discount_code.valid_until)
    if valid_from is not None and now < valid_from:
        raise DiscountCodeError("Discount code is not yet valid")
    if valid_until is not None and now > valid_until:
        raise DiscountCodeError("Discount code has expired")

    return ResolvedDiscount(code=discount_code, category=category)


def apply_seasonal_limit(
    requested: int,
    max_allowed: Optional[int],
    used: int,
    *,
    category_name: str = "",
) -> DiscountLimitResult:
    """Cap ``requested`` so season usage never exceeds ``max_allowed``.

    A missing or non-positive limit means uncapped.
    """
    if not max_allowed or max_allowed <= 0:
        return DiscountLimitResult(
            original_amount=requested,
            final_amount=requested,
            is_partial_discount=False,
        )

    remaining = max(0, max_allowed - used)
    label = f"{category_name} " if category_name else ""

    if used >= max_allowed:
        return DiscountLimitResult(
            original_amount=requested,
            final_amount=0,
            is_partial_discount=False,
            message=(
                f"You have already reached your {format_cents(max_allowed)} "
                f"season limit for {label}discounts."
            ),
            usage=SeasonalUsage(total_used=used, remaining=0, max_allowed=max_allowed),
        )

    if used + requested > max_allowed:
        return DiscountLimitResult(
            original_amount=requested,
            final_amount=remaining,
            is_partial_discount=True,
            message=(
                f"Applied {format_cents(remaining)} discount (you have "
                f"{format_cents(remaining)} remaining of your "
                f"{format_cents(max_allowed)} {label}season limit). You have "
                f"already used {format_cents(used)} in discounts this season."
            ),
            usage=SeasonalUsage(
                total_used=used, remaining=remaining, max_allowed=max_allowed
            ),
        )

    return DiscountLimitResult(
        original_amount=requested,
        final_amount=requested,
        is_partial_discount=False,
        usage=SeasonalUsage(
            total_used=used, remaining=remaining, max_allowed=max_allowed
        ),
    )


async def seasonal_discount_usage(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    category_id: uuid.UUID,
    season_id: uuid.UUID,
) -> int:
    total = await db.scalar(
        select(func.coalesce(func.sum(_usage_amount), 0))
        .join(AccountingInvoice, AccountingInvoice.id == AccountingLineItem.invoice_id)
        .join(DiscountCode, DiscountCode.id == AccountingLineItem.discount_code_id)
        .where(
            AccountingInvoice.user_id == user_id,
            AccountingInvoice.season_id == season_id,
            AccountingInvoice.sync_status.not_in(_VOID_SYNC_STATUSES),
            DiscountCode.category_id == category_id,
        )
    )
    return int(total or 0)


async def check_seasonal_discount_limit(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    discount_code: DiscountCode,
    season_id: Optional[uuid.UUID],
    requested_amount: int,
) -> DiscountLimitResult:
    category = await db.get(DiscountCategory, discount_code.category_id)
    if category is None:
        raise DiscountCodeError("Discount code not found")

    if season_id is None or not category.max_discount_per_user_per_season:
        return apply_seasonal_limit(requested_amount, None, 0)

    used = await seasonal_discount_usage(
        db, user_id=user_id, category_id=category.id, season_id=season_id
    )
    result = apply_seasonal_limit(
        requested_amount,
        category.max_discount_per_user_per_season,
        used,
        category_name=category.name,
    )
    if result.final_amount != requested_amount:
        logger.info(
            "Seasonal discount limit applied",
            extra={
                "extra_fields": {
                    "user_id": str(user_id),
                    "discount_code_id": str(discount_code.id),
                    "category_id": str(category.id),
                    "season_id": str(season_id),
                    "total_used": used,
                    "max_allowed": category.max_discount_per_user_per_season,
                    "requested_amount": requested_amount,
                    "applied_amount": result.final_amount,
                }
            },
        )
    return result
