"""Registration purchase: price, guard, claim, stage, charge, confirm.

The staged accounting record is written before Stripe is called and carries
the ids of the claimed registration rows; the Stripe request carries the
staging id so a webhook can finish the job if the synchronous response is
lost. ``record_payment`` and ``settle_purchase`` also carry waitlist
selections and membership purchases.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.models import (
    LineItemType,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from services.payments_service.services import discounts, staging
from services.payments_service.services.pricing import (
    PriceBreakdown,
    compute_price,
    percentage_discount,
)
from services.payments_service.stripe_client import (
    ProcessorResult,
    StripeClient,
    StripeError,
)
from services.registrations_service.models import (
    Registration,
    RegistrationCategory,
    RegistrationPaymentStatus,
    User,
    UserRegistration,
)
from services.registrations_service.services.capacity import claim_category_slot
from services.registrations_service.services.denials import (
    DUPLICATE_REGISTRATION_MESSAGE,
    DenialReason,
    RegistrationLookupError,
)
from services.registrations_service.services.validation import (
    evaluate_registration_attempt,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PAYMENT_FAILED_MESSAGE = (
    "Payment could not be processed. Please try again or update your payment method."
)


class PurchaseStatus(str, enum.Enum):
    COMPLETED = "completed"
    PROCESSING = "processing"
    DENIED = "denied"
    FAILED = "failed"


@dataclass(frozen=True)
class PurchaseOutcome:
    status: PurchaseStatus
    price: Optional[PriceBreakdown] = None
    reason: Optional[DenialReason] = None
    error: Optional[str] = None
    discount_message: Optional[str] = None
    staging_id: Optional[uuid.UUID] = None
    payment_id: Optional[uuid.UUID] = None
    user_registration_id: Optional[uuid.UUID] = None
    user_membership_id: Optional[uuid.UUID] = None


async def price_registration(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    registration: Registration,
    category: RegistrationCategory,
    discount_code: Optional[str] = None,
) -> tuple[PriceBreakdown, Optional[staging.StagedDiscount], Optional[str]]:
    """Category price less any discount code, capped by the season limit."""
    if not discount_code:
        return compute_price(category.price), None, None

    resolved = await discounts.resolve_discount_code(db, discount_code)
    return await apply_discount(
        db,
        user_id=user_id,
        base=category.price,
        season_id=registration.season_id,
        resolved=resolved,
    )


async def apply_discount(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    base: int,
    season_id: Optional[uuid.UUID],
    resolved: discounts.ResolvedDiscount,
) -> tuple[PriceBreakdown, Optional[staging.StagedDiscount], Optional[str]]:
    requested = percentage_discount(base, resolved.code.percentage)
    limit = await discounts.check_seasonal_discount_limit(
        db,
        user_id=user_id,
        discount_code=resolved.code,
        season_id=season_id,
        requested_amount=requested,
    )
    price = compute_price(base, fixed_discount=limit.final_amount)
    staged_discount = None
    if price.discount > 0:
        staged_discount = staging.StagedDiscount(
            discount_code_id=resolved.code.id,
            code=resolved.code.code,
            amount=price.discount,
            account_code=resolved.category.accounting_code,
            category_name=resolved.category.name,
        )
    return price, staged_discount, limit.message


async def price_with_saved_discount(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    base: int,
    season_id: Optional[uuid.UUID],
    discount_code_id: Optional[uuid.UUID],
    now: Optional[datetime] = None,
) -> tuple[PriceBreakdown, Optional[staging.StagedDiscount], Optional[str]]:
    """Price with a code saved at sign-up; a code no longer usable is dropped."""
    if discount_code_id is None:
        return compute_price(base), None, None
    try:
        resolved = await discounts.resolve_discount_code_by_id(
            db, discount_code_id, now=now
        )
    except discounts.DiscountCodeError as e:
        logger.warning(
            "Dropping saved discount code: %s",
            e.message,
            extra={
                "extra_fields": {
                    "user_id": str(user_id),
                    "discount_code_id": str(discount_code_id),
                }
            },
        )
        return compute_price(base), None, None
    return await apply_discount(
        db, user_id=user_id, base=base, season_id=season_id, resolved=resolved
    )


async def _release_claim(db: AsyncSession, user_registration_id: uuid.UUID) -> None:
    user_registration = await db.get(UserRegistration, user_registration_id)
    if user_registration is not None:
        user_registration.payment_status = RegistrationPaymentStatus.FAILED
        user_registration.processing_expires_at = None
        await db.commit()


async def purchase_registration(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    user_id: uuid.UUID,
    registration_id: uuid.UUID,
    category_id: uuid.UUID,
    discount_code: Optional[str] = None,
    presale_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseOutcome:
    registration = await db.get(Registration, registration_id)
    if registration is None:
        raise RegistrationLookupError("Registration not found")
    category = await db.get(RegistrationCategory, category_id)
    if category is None or category.registration_id != registration_id:
        raise RegistrationLookupError("Category not found")

    price, staged_discount, discount_message = await price_registration(
        db,
        user_id=user_id,
        registration=registration,
        category=category,
        discount_code=discount_code,
    )

    check = await evaluate_registration_attempt(
        db,
        user_id=user_id,
        registration=registration,
        category=category,
        effective_price=price.net,
        presale_code=presale_code,
        now=now,
    )
    if not check.can_register:
        return PurchaseOutcome(
            status=PurchaseStatus.DENIED,
            price=price,
            reason=check.reason,
            error=check.error,
        )

    claim = await claim_category_slot(
        db,
        user_id=user_id,
        registration_id=registration_id,
        category_id=category_id,
        registration_fee=price.gross,
        amount_due=price.net,
        presale_code=presale_code,
        discount_code_id=staged_discount.discount_code_id if staged_discount else None,
        now=now,
    )
    if not claim.claimed:
        return PurchaseOutcome(
            status=PurchaseStatus.DENIED,
            price=price,
            reason=claim.reason,
            error=claim.error,
        )
    user_registration_id = claim.user_registration.id

    line_items = [
        staging.StagedLineItem(
            line_item_type=LineItemType.REGISTRATION,
            description=f"{registration.name} - {category.custom_name}",
            amount=price.gross,
            account_code=category.accounting_code,
            item_id=registration.id,
        )
    ]
    try:
        invoice = await staging.stage_transaction(
            db,
            user_id=user_id,
            amounts=price,
            line_items=line_items,
            discounts=[staged_discount] if staged_discount else (),
            season_id=registration.season_id,
            metadata={
                "user_registration_ids": [str(user_registration_id)],
                "registration_id": str(registration_id),
                "category_id": str(category_id),
                "category_name": category.custom_name,
            },
        )
    except staging.StagingError:
        await _release_claim(db, user_registration_id)
        return PurchaseOutcome(
            status=PurchaseStatus.FAILED,
            price=price,
            error=PAYMENT_FAILED_MESSAGE,
        )
    staging_id = invoice.id

    payment_id = await record_payment(
        db,
        staging_id=staging_id,
        user_id=user_id,
        price=price,
        description=f"{registration.name} - {category.custom_name}",
        metadata={
            "registration_id": str(registration_id),
            "user_registration_id": str(user_registration_id),
        },
    )
    claim.user_registration.payment_id = payment_id
    await db.commit()

    return await settle_purchase(
        db,
        stripe,
        notifier,
        staging_id=staging_id,
        payment_id=payment_id,
        user_id=user_id,
        price=price,
        user_registration_id=user_registration_id,
        discount_message=discount_message,
    )


async def record_payment(
    db: AsyncSession,
    *,
    staging_id: uuid.UUID,
    user_id: uuid.UUID,
    price: PriceBreakdown,
    description: str,
    metadata: dict,
) -> uuid.UUID:
    """Create the pending Payment for a staged invoice and link the two.

    ``description`` and ``metadata`` are kept on the payment so a charge can
    be resubmitted with exactly the same parameters.
    """
    payment = Payment(
        user_id=user_id,
        total_amount=price.gross,
        discount_amount=price.discount,
        final_amount=price.net,
        status=PaymentStatus.PENDING,
        payment_method=PaymentMethod.STRIPE if price.net > 0 else PaymentMethod.FREE,
        payment_metadata={
            "staging_id": str(staging_id),
            "description": description,
            **metadata,
        },
    )
    db.add(payment)
    await db.flush()
    payment_id = payment.id
    await db.commit()
    await staging.link_transaction(db, staging_id, payment_id=payment_id)
    return payment_id


async def _hold_claim(
    db: AsyncSession, user_registration_id: Optional[uuid.UUID]
) -> None:
    # Settled by webhook or the stale-record reconciler, not by the claim sweep
    if user_registration_id is None:
        return
    user_registration = await db.get(UserRegistration, user_registration_id)
    if user_registration is not None:
        user_registration.payment_status = RegistrationPaymentStatus.AWAITING_PAYMENT
        user_registration.processing_expires_at = None
        await db.commit()


async def settle_purchase(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    staging_id: uuid.UUID,
    payment_id: uuid.UUID,
    user_id: uuid.UUID,
    price: PriceBreakdown,
    user_registration_id: Optional[uuid.UUID] = None,
    user_membership_id: Optional[uuid.UUID] = None,
    discount_message: Optional[str] = None,
) -> PurchaseOutcome:
    """Complete a staged, linked purchase: free, charged, held or rolled back.

    A Stripe error with no HTTP response leaves the record staged; the
    charge may have gone through, and the webhook or the reconciler, which
    retries with the same idempotency key, settles it.
    """
    outcome_fields = dict(
        price=price,
        discount_message=discount_message,
        staging_id=staging_id,
        payment_id=payment_id,
        user_registration_id=user_registration_id,
        user_membership_id=user_membership_id,
    )

    if price.is_zero_dollar:
        confirmed = await staging.complete_zero_dollar_transaction(
            db, staging_id, notifier=notifier
        )
        return _confirmed_outcome(confirmed, outcome_fields)

    payment = await db.get(Payment, payment_id)
    try:
        result = await submit_charge(db, stripe, payment)
    except StripeError as e:
        log_fields = {
            "staging_id": str(staging_id),
            "payment_id": str(payment_id),
            "user_id": str(user_id),
            "amount": price.net,
            "stripe_status": e.status_code,
            "error": e.message,
        }
        if e.outcome_unknown:
            logger.warning(
                "Charge outcome unknown; leaving staged for reconciliation",
                extra={"extra_fields": log_fields},
            )
            await _hold_claim(db, user_registration_id)
            return PurchaseOutcome(status=PurchaseStatus.PROCESSING, **outcome_fields)

        logger.error("Charge failed", extra={"extra_fields": log_fields})
        await staging.rollback_transaction(
            db, staging_id, f"Stripe charge failed: {e.message}"
        )
        return PurchaseOutcome(
            status=PurchaseStatus.FAILED, error=PAYMENT_FAILED_MESSAGE, **outcome_fields
        )

    payment.stripe_payment_intent_id = result.id
    await db.commit()

    if result.succeeded:
        confirmed = await staging.confirm_transaction(
            db, staging_id, result, notifier=notifier
        )
        return _confirmed_outcome(confirmed, outcome_fields)

    if result.in_progress:
        await _hold_claim(db, user_registration_id)
        logger.info(
            "Charge %s still processing; awaiting webhook",
            result.id,
            extra={"extra_fields": {"staging_id": str(staging_id)}},
        )
        return PurchaseOutcome(status=PurchaseStatus.PROCESSING, **outcome_fields)

    logger.warning(
        "Charge %s ended in status %s",
        result.id,
        result.status,
        extra={"extra_fields": {"staging_id": str(staging_id), "amount": price.net}},
    )
    await staging.rollback_transaction(
        db, staging_id, f"Charge not completed (status {result.status})"
    )
    return PurchaseOutcome(
        status=PurchaseStatus.FAILED, error=PAYMENT_FAILED_MESSAGE, **outcome_fields
    )


async def submit_charge(
    db: AsyncSession, stripe: StripeClient, payment: Payment
) -> ProcessorResult:
    """Send the charge for a pending payment under its staging id's key.

    Safe to call again for the same payment: Stripe answers a repeated
    idempotency key with the original result instead of charging twice.
    """
    metadata = dict(payment.payment_metadata or {})
    description = metadata.pop("description", None)
    staging_id = metadata.pop("staging_id")
    user = await db.get(User, payment.user_id)
    return await stripe.create_charge(
        amount=payment.final_amount,
        customer_id=user.stripe_customer_id,
        payment_method_id=user.stripe_payment_method_id,
        metadata={
            "staging_id": staging_id,
            "payment_id": str(payment.id),
            "user_id": str(payment.user_id),
            **metadata,
        },
        idempotency_key=f"charge:{staging_id}",
        description=description,
    )


def _confirmed_outcome(
    confirmed: staging.ConfirmOutcome, outcome_fields: dict
) -> PurchaseOutcome:
    if confirmed.conflict:
        return PurchaseOutcome(
            status=PurchaseStatus.DENIED,
            reason=DenialReason.DUPLICATE_REGISTRATION,
            error=DUPLICATE_REGISTRATION_MESSAGE,
            **outcome_fields,
        )
    return PurchaseOutcome(status=PurchaseStatus.COMPLETED, **outcome_fields)
