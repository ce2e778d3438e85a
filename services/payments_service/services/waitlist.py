"""Admin selection of a waitlisted player into a paid registration.

Selection bypasses the category capacity check: the admin is deciding to
let this player in. Everything else runs as a normal purchase, so the price
is settled first and eligibility is checked against the discounted amount.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import format_cents
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.common.notifications import Notification, NotificationDispatcher
from services.payments_service.models import LineItemType
from services.payments_service.services import charges, staging
from services.payments_service.services.charges import (
    PAYMENT_FAILED_MESSAGE,
    PurchaseOutcome,
    PurchaseStatus,
)
from services.payments_service.services.pricing import PriceBreakdown
from services.payments_service.stripe_client import StripeClient
from services.registrations_service.models import (
    Registration,
    RegistrationCategory,
    RegistrationPaymentStatus,
    User,
    UserRegistration,
    WaitlistEntry,
)
from services.registrations_service.services.validation import (
    validate_registration_eligibility,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class WaitlistSelectionError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


async def price_waitlist_entry(
    db: AsyncSession,
    entry: WaitlistEntry,
    *,
    registration: Registration,
    category: RegistrationCategory,
    override_price: Optional[int] = None,
    now: Optional[datetime] = None,
) -> tuple[PriceBreakdown, Optional[staging.StagedDiscount], Optional[str]]:
    """Override or category price, less the code saved on the entry.

    A saved code that is no longer usable is dropped rather than blocking the
    selection.
    """
    if override_price is not None and not 0 <= override_price <= category.price:
        raise WaitlistSelectionError(
            "Override price must be between $0.00 and "
            f"{format_cents(category.price)}"
        )
    base = category.price if override_price is None else override_price
    return await charges.price_with_saved_discount(
        db,
        user_id=entry.user_id,
        base=base,
        season_id=registration.season_id,
        discount_code_id=entry.discount_code_id,
        now=now,
    )


async def select_from_waitlist(
    db: AsyncSession,
    stripe: StripeClient,
    notifier: Optional[NotificationDispatcher],
    *,
    entry_id: uuid.UUID,
    override_price: Optional[int] = None,
    selected_by: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> PurchaseOutcome:
    """Register and charge a waitlisted player.

    The entry leaves the waitlist once the charge completes or is left for
    Stripe to settle. A denial or failed charge keeps it in place.
    """
    now = now or utc_now()
    entry = await db.get(WaitlistEntry, entry_id)
    if entry is None:
        raise WaitlistSelectionError("Waitlist entry not found", status_code=404)
    if entry.removed_at is not None:
        raise WaitlistSelectionError("This waitlist entry has already been processed")

    registration = await db.get(Registration, entry.registration_id)
    category = await db.get(RegistrationCategory, entry.category_id)
    if registration is None or category is None:
        raise WaitlistSelectionError("Registration not found", status_code=404)

    price, staged_discount, discount_message = await price_waitlist_entry(
        db,
        entry,
        registration=registration,
        category=category,
        override_price=override_price,
        now=now,
    )

    check = await validate_registration_eligibility(
        db, entry.user_id, registration.id, effective_price=price.net
    )
    if not check.can_register:
        return PurchaseOutcome(
            status=PurchaseStatus.DENIED,
            price=price,
            reason=check.reason,
            error=check.error,
        )

    ttl = get_settings().REGISTRATION_CLAIM_TTL_MINUTES
    user_registration = UserRegistration(
        user_id=entry.user_id,
        registration_id=registration.id,
        registration_category_id=category.id,
        payment_status=RegistrationPaymentStatus.PROCESSING,
        registration_fee=price.gross,
        amount_paid=price.net,
        discount_code_id=staged_discount.discount_code_id if staged_discount else None,
        processing_expires_at=now + timedelta(minutes=ttl),
    )
    db.add(user_registration)
    await db.commit()

    description = f"Waitlist: {registration.name} - {category.custom_name}"
    try:
        invoice = await staging.stage_transaction(
            db,
            user_id=entry.user_id,
            amounts=price,
            line_items=[
                staging.StagedLineItem(
                    line_item_type=LineItemType.REGISTRATION,
                    description=description,
                    amount=price.gross,
                    account_code=category.accounting_code,
                    item_id=registration.id,
                )
            ],
            discounts=[staged_discount] if staged_discount else (),
            season_id=registration.season_id,
            metadata={
                "user_registration_ids": [str(user_registration.id)],
                "registration_id": str(registration.id),
                "category_id": str(category.id),
                "category_name": category.custom_name,
                "waitlist_entry_id": str(entry.id),
            },
        )
    except staging.StagingError:
        user_registration.payment_status = RegistrationPaymentStatus.FAILED
        user_registration.processing_expires_at = None
        await db.commit()
        return PurchaseOutcome(
            status=PurchaseStatus.FAILED, price=price, error=PAYMENT_FAILED_MESSAGE
        )

    payment_id = await charges.record_payment(
        db,
        staging_id=invoice.id,
        user_id=entry.user_id,
        price=price,
        description=description,
        metadata={
            "registration_id": str(registration.id),
            "user_registration_id": str(user_registration.id),
            "waitlist_entry_id": str(entry.id),
        },
    )
    user_registration.payment_id = payment_id
    await db.commit()

    outcome = await charges.settle_purchase(
        db,
        stripe,
        notifier,
        staging_id=invoice.id,
        payment_id=payment_id,
        user_id=entry.user_id,
        price=price,
        user_registration_id=user_registration.id,
        discount_message=discount_message,
    )
    if outcome.status not in (PurchaseStatus.COMPLETED, PurchaseStatus.PROCESSING):
        return outcome

    entry.removed_at = now
    entry.selected_by = selected_by
    await db.commit()

    logger.info(
        "Selected waitlist entry %s into registration %s",
        entry.id,
        registration.id,
        extra={
            "extra_fields": {
                "user_id": str(entry.user_id),
                "staging_id": str(invoice.id),
                "amount": price.net,
                "selected_by": str(selected_by) if selected_by else None,
            }
        },
    )

    if notifier is not None:
        user = await db.get(User, entry.user_id)
        if user is not None:
            await notifier.dispatch(
                Notification(
                    template_type="waitlist_selected",
                    to_email=user.email,
                    template_data={
                        "user_name": user.full_name,
                        "registration_name": registration.name,
                        "category_name": category.custom_name,
                        "amount": format_cents(price.net),
                    },
                    dedupe_key=f"waitlist_selected:{entry.id}",
                )
            )
    return outcome
