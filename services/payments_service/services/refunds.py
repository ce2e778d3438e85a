"""Admin refunds staged as credit notes.

A refund is planned (amount checks, credit-note lines), staged, recorded,
and only then sent to Stripe. Full refunds optimistically release the
user's registrations before Stripe answers; the credit note keeps a
snapshot of their previous status so a failed refund restores them exactly.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from libs.common.currency import format_cents
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.models import (
    OUTSTANDING_REFUND_STATUSES,
    AccountingInvoice,
    InvoiceType,
    LineItemType,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    RefundType,
)
from services.payments_service.services import discounts, staging
from services.payments_service.services.pricing import (
    PriceBreakdown,
    percentage_discount,
)
from services.payments_service.stripe_client import (
    REFUND_SUCCEEDED,
    ProcessorResult,
    StripeClient,
    StripeError,
)
from services.registrations_service.models import (
    RegistrationPaymentStatus,
    UserRegistration,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Fallback account for credit notes with no original invoice lines to mirror
DEFAULT_REFUND_ACCOUNT_CODE = "200"

REFUND_FAILED_MESSAGE = "Refund processing failed. Please try again later."


class RefundValidationError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ProcessorError(Exception):
    def __init__(self, message: str = REFUND_FAILED_MESSAGE):
        self.message = message
        super().__init__(message)


class RefundKind(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True)
class DiscountRefundInfo:
    code: str
    category: str
    percentage: int
    is_partial: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class RefundPlan:
    payment: Payment
    refund_type: RefundType
    amount: int
    kind: RefundKind
    available: int
    amounts: PriceBreakdown
    line_items: list[staging.StagedLineItem]
    season_id: Optional[uuid.UUID] = None
    discount: Optional[DiscountRefundInfo] = None


@dataclass(frozen=True)
class RefundOutcome:
    refund_id: uuid.UUID
    staging_id: uuid.UUID
    status: RefundStatus
    kind: RefundKind
    amount: int
    message: str
    registrations_released: list[uuid.UUID] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def classify_refund(amount: int, original: int) -> RefundKind:
    if amount < 0:
        raise RefundValidationError("Refund amount cannot be negative")
    if amount > original:
        raise RefundValidationError(
            f"Refund amount {format_cents(amount)} exceeds original payment "
            f"{format_cents(original)}"
        )
    return RefundKind.FULL if amount == original else RefundKind.PARTIAL


def refund_message(amount: int, original: int) -> str:
    if classify_refund(amount, original) == RefundKind.FULL:
        return f"Refund of {format_cents(amount)} processed successfully"
    return (
        f"Partial refund of {format_cents(amount)} "
        f"(of {format_cents(original)}) processed successfully"
    )


def _amounts_for(line_items: Sequence[staging.StagedLineItem]) -> PriceBreakdown:
    credits = sum(item.amount for item in line_items if item.amount > 0)
    reversals = -sum(item.amount for item in line_items if item.amount < 0)
    return PriceBreakdown(gross=credits, discount=reversals, net=credits - reversals)


def _line_amount(item) -> int:
    if isinstance(item, staging.StagedLineItem):
        return item.amount * item.quantity
    return item.line_amount


def allocate_proportional_credit(
    line_items: Sequence, amount: int
) -> list[staging.StagedLineItem]:
    """Split ``amount`` across the original invoice lines in proportion.

    ``line_items`` are the original invoice's lines (``AccountingLineItem``
    rows or ``StagedLineItem``); signs are kept so discount lines are reversed
    proportionally. The rounding remainder lands on the first line. A zero
    refund of a zero-dollar invoice mirrors the original lines.
    """
    lines = [
        (
            item.line_item_type,
            item.description,
            _line_amount(item),
            item.account_code,
            item.item_id,
            item.discount_code_id,
        )
        for item in line_items
    ]
    if not lines:
        return [
            staging.StagedLineItem(
                line_item_type=LineItemType.REFUND,
                description="Refund",
                amount=amount,
                account_code=DEFAULT_REFUND_ACCOUNT_CODE,
            )
        ]

    original_total = sum(line[2] for line in lines)
    if original_total == 0:
        if amount != 0:
            raise RefundValidationError(
                "Cannot allocate a refund against a zero-dollar invoice"
            )
        shares = [line[2] for line in lines]
    else:
        shares = [round(line[2] * amount / original_total) for line in lines]
        shares[0] += amount - sum(shares)

    allocated = []
    for line, share in zip(lines, shares):
        line_type, description, _, account_code, item_id, discount_code_id = line
        allocated.append(
            staging.StagedLineItem(
                line_item_type=line_type,
                description=f"Refund: {description}",
                amount=share,
                account_code=account_code,
                item_id=item_id,
                discount_code_id=discount_code_id,
            )
        )
    return allocated


async def available_for_refund(db: AsyncSession, payment: Payment) -> int:
    refunded = await db.scalar(
        select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.payment_id == payment.id,
            Refund.status.in_(OUTSTANDING_REFUND_STATUSES),
        )
    )
    return payment.final_amount - int(refunded or 0)


async def _original_invoice(
    db: AsyncSession, payment_id: uuid.UUID
) -> Optional[AccountingInvoice]:
    result = await db.execute(
        select(AccountingInvoice)
        .where(
            AccountingInvoice.payment_id == payment_id,
            AccountingInvoice.invoice_type == InvoiceType.INVOICE,
        )
        .order_by(AccountingInvoice.staged_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


async def plan_refund(
    db: AsyncSession,
    *,
    payment_id: uuid.UUID,
    refund_type: RefundType = RefundType.PROPORTIONAL,
    amount: Optional[int] = None,
    discount_code: Optional[str] = None,
) -> RefundPlan:
    """Validate a refund request and compute the credit note it would stage."""
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise RefundValidationError("Payment not found", status_code=404)
    if payment.status != PaymentStatus.COMPLETED:
        raise RefundValidationError("Can only refund completed payments")

    available = await available_for_refund(db, payment)
    original_invoice = await _original_invoice(db, payment.id)
    season_id = original_invoice.season_id if original_invoice else None
    discount_info = None

    if refund_type == RefundType.PROPORTIONAL:
        if amount is None:
            raise RefundValidationError("Refund amount is required")
        if amount < 0:
            raise RefundValidationError("Refund amount cannot be negative")
        if amount == 0 and payment.final_amount != 0:
            raise RefundValidationError(
                "Positive refund amount required for proportional refunds"
            )
        if amount > available:
            raise RefundValidationError(
                f"Cannot refund {format_cents(amount)}. "
                f"Only {format_cents(available)} available."
            )
        original_lines = (
            await staging.get_line_items(db, original_invoice.id)
            if original_invoice
            else []
        )
        line_items = allocate_proportional_credit(original_lines, amount)

    elif refund_type == RefundType.DISCOUNT_CODE:
        if not discount_code:
            raise RefundValidationError("A discount code is required")
        try:
            resolved = await discounts.resolve_discount_code(db, discount_code)
        except discounts.DiscountCodeError as e:
            raise RefundValidationError(e.message)
        requested = percentage_discount(payment.total_amount, resolved.code.percentage)
        limit = await discounts.check_seasonal_discount_limit(
            db,
            user_id=payment.user_id,
            discount_code=resolved.code,
            season_id=season_id,
            requested_amount=requested,
        )
        amount = limit.final_amount
        if amount <= 0:
            raise RefundValidationError(
                limit.message or "Discount code does not produce a refund"
            )
        if amount > available:
            raise RefundValidationError(
                f"Discount amount {format_cents(amount)} exceeds available "
                f"refund amount {format_cents(available)}"
            )
        line_items = [
            staging.StagedLineItem(
                line_item_type=LineItemType.DISCOUNT,
                description=(
                    f"Discount: {resolved.code.code} ({resolved.category.name})"
                ),
                amount=amount,
                account_code=resolved.category.accounting_code,
                discount_code_id=resolved.code.id,
            )
        ]
        discount_info = DiscountRefundInfo(
            code=resolved.code.code,
            category=resolved.category.name,
            percentage=resolved.code.percentage,
            is_partial=limit.is_partial_discount,
            message=limit.message,
        )
    else:
        raise RefundValidationError(
            'Invalid refund type. Must be "proportional" or "discount_code"'
        )

    return RefundPlan(
        payment=payment,
        refund_type=refund_type,
        amount=amount,
        kind=classify_refund(amount, payment.final_amount),
        available=available,
        amounts=_amounts_for(line_items),
        line_items=line_items,
        season_id=season_id,
        discount=discount_info,
    )


async def preview_refund(
    db: AsyncSession,
    *,
    payment_id: uuid.UUID,
    refund_type: RefundType = RefundType.PROPORTIONAL,
    amount: Optional[int] = None,
    discount_code: Optional[str] = None,
) -> RefundPlan:
    """The credit note a refund would stage, without writing anything."""
    return await plan_refund(
        db,
        payment_id=payment_id,
        refund_type=refund_type,
        amount=amount,
        discount_code=discount_code,
    )


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


async def _paid_registrations(
    db: AsyncSession, payment_id: uuid.UUID
) -> list[UserRegistration]:
    result = await db.execute(
        select(UserRegistration).where(
            UserRegistration.payment_id == payment_id,
            UserRegistration.payment_status == RegistrationPaymentStatus.PAID,
        )
    )
    return list(result.scalars().all())


async def process_refund(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    payment_id: uuid.UUID,
    refund_type: RefundType = RefundType.PROPORTIONAL,
    amount: Optional[int] = None,
    discount_code: Optional[str] = None,
    reason: Optional[str] = None,
    processed_by: Optional[str] = None,
) -> RefundOutcome:
    plan = await plan_refund(
        db,
        payment_id=payment_id,
        refund_type=refund_type,
        amount=amount,
        discount_code=discount_code,
    )
    payment = plan.payment
    original_amount = payment.final_amount
    payment_intent_id = payment.stripe_payment_intent_id

    # A refund that clears the remaining balance releases the registration
    # even when earlier partial refunds make it "partial" on its own.
    releases_registrations = plan.kind == RefundKind.FULL or (
        plan.amount == plan.available
    )
    registrations = (
        await _paid_registrations(db, payment.id) if releases_registrations else []
    )
    snapshot = {str(ur.id): ur.payment_status.value for ur in registrations}

    invoice = await staging.stage_transaction(
        db,
        user_id=payment.user_id,
        amounts=plan.amounts,
        line_items=plan.line_items,
        invoice_type=InvoiceType.CREDIT_NOTE,
        season_id=plan.season_id,
        metadata={
            "payment_id": str(payment_id),
            "refund_type": plan.refund_type.value,
            "registration_snapshot": snapshot,
        },
    )
    staging_id = invoice.id

    refund = Refund(
        payment_id=payment_id,
        user_id=payment.user_id,
        amount=plan.amount,
        reason=reason,
        refund_type=plan.refund_type,
        status=RefundStatus.PROCESSING if plan.amount > 0 else RefundStatus.PENDING,
        processed_by=processed_by,
    )
    db.add(refund)
    await db.flush()
    refund_id = refund.id
    await db.commit()
    await staging.link_transaction(db, staging_id, refund_id=refund_id)

    now = utc_now()
    for user_registration in registrations:
        user_registration.payment_status = RegistrationPaymentStatus.REFUNDED
        user_registration.refunded_at = now
    await db.commit()
    released = [ur.id for ur in registrations]

    message = refund_message(plan.amount, original_amount)

    if plan.amount == 0:
        await staging.complete_zero_dollar_transaction(db, staging_id, notifier=notifier)
        return RefundOutcome(
            refund_id=refund_id,
            staging_id=staging_id,
            status=RefundStatus.COMPLETED,
            kind=plan.kind,
            amount=0,
            message=message,
            registrations_released=released,
        )

    if not payment_intent_id:
        await staging.rollback_transaction(
            db, staging_id, "Payment has no Stripe payment intent"
        )
        raise ProcessorError()

    refund = await db.get(Refund, refund_id)
    try:
        result = await submit_refund(stripe, refund, payment_intent_id, staging_id)
    except StripeError as e:
        log_fields = {
            "staging_id": str(staging_id),
            "refund_id": str(refund_id),
            "payment_id": str(payment_id),
            "amount": plan.amount,
            "stripe_status": e.status_code,
            "error": e.message,
        }
        if e.outcome_unknown:
            # The refund may exist at Stripe; the webhook or the reconciler,
            # retrying under the same key, settles it.
            logger.warning(
                "Refund outcome unknown; leaving staged for reconciliation",
                extra={"extra_fields": log_fields},
            )
            return RefundOutcome(
                refund_id=refund_id,
                staging_id=staging_id,
                status=RefundStatus.PROCESSING,
                kind=plan.kind,
                amount=plan.amount,
                message=message,
                registrations_released=released,
            )
        logger.error("Stripe refund failed", extra={"extra_fields": log_fields})
        await staging.rollback_transaction(
            db, staging_id, f"Stripe refund failed: {e.message}"
        )
        raise ProcessorError()

    refund.stripe_refund_id = result.id
    await db.commit()

    if result.status == REFUND_SUCCEEDED:
        await staging.confirm_transaction(db, staging_id, result, notifier=notifier)
        status = RefundStatus.COMPLETED
    elif result.in_progress:
        logger.info(
            "Refund %s pending at Stripe; awaiting webhook",
            result.id,
            extra={"extra_fields": {"staging_id": str(staging_id)}},
        )
        status = RefundStatus.PROCESSING
    else:
        logger.error(
            "Stripe refund %s ended in status %s",
            result.id,
            result.status,
            extra={
                "extra_fields": {
                    "staging_id": str(staging_id),
                    "amount": plan.amount,
                }
            },
        )
        await staging.rollback_transaction(
            db, staging_id, f"Refund not completed (status {result.status})"
        )
        raise ProcessorError()

    return RefundOutcome(
        refund_id=refund_id,
        staging_id=staging_id,
        status=status,
        kind=plan.kind,
        amount=plan.amount,
        message=message,
        registrations_released=released,
    )


async def submit_refund(
    stripe: StripeClient,
    refund: Refund,
    payment_intent_id: str,
    staging_id: uuid.UUID,
) -> ProcessorResult:
    """Send a refund to Stripe under its staging id's idempotency key."""
    return await stripe.create_refund(
        payment_intent_id=payment_intent_id,
        amount=refund.amount,
        metadata={
            "refund_id": str(refund.id),
            "staging_id": str(staging_id),
            "payment_id": str(refund.payment_id),
            "processed_by": refund.processed_by or "",
            "reason": refund.reason or "",
        },
        idempotency_key=f"refund:{staging_id}",
    )
