"""Registration eligibility checks shared by every registration flow.

Only a *paid* registration blocks another attempt; refunded and failed rows
are excluded by the query itself. The payment-method check runs after the
duplicate check and only when money is actually due, so flows that learn
the final price late (waitlist selection with a discount code) call the two
checks separately.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.registrations_service.models import (
    Registration,
    RegistrationCategory,
    RegistrationPaymentStatus,
    SetupIntentStatus,
    User,
    UserRegistration,
)
from services.registrations_service.services.capacity import (
    category_availability,
    get_category_occupancy,
)
from services.registrations_service.services.denials import (
    CATEGORY_FULL_MESSAGE,
    DUPLICATE_REGISTRATION_MESSAGE,
    INVALID_PAYMENT_METHOD_MESSAGE,
    DenialReason,
    RegistrationCheck,
    RegistrationLookupError,
)
from services.registrations_service.services.eligibility import (
    check_membership_eligibility_for_user,
)
from services.registrations_service.services.lifecycle import (
    is_status_available,
    presale_code_matches,
    registration_status,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PaymentMethodPolicy = Literal["strict", "lenient"]


@dataclass(frozen=True)
class PaymentMethodCheck:
    is_valid: bool
    error: Optional[str] = None


async def can_user_register(
    db: AsyncSession, user_id: uuid.UUID, registration_id: uuid.UUID
) -> RegistrationCheck:
    result = await db.execute(
        select(UserRegistration.id).where(
            UserRegistration.user_id == user_id,
            UserRegistration.registration_id == registration_id,
            UserRegistration.payment_status == RegistrationPaymentStatus.PAID,
        )
    )
    if result.first() is not None:
        return RegistrationCheck.denied(
            DenialReason.DUPLICATE_REGISTRATION, DUPLICATE_REGISTRATION_MESSAGE
        )
    return RegistrationCheck.allowed()


def payment_method_is_valid(user: User, policy: PaymentMethodPolicy) -> bool:
    if not user.stripe_payment_method_id:
        return False
    if policy == "strict":
        return user.setup_intent_status == SetupIntentStatus.SUCCEEDED
    return True


async def validate_payment_method(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    policy: Optional[PaymentMethodPolicy] = None,
) -> PaymentMethodCheck:
    """Check for a saved payment method under the configured policy.

    ``lenient`` accepts any stored payment method id; ``strict`` also needs
    the setup intent to have succeeded.
    """
    policy = policy or get_settings().PAYMENT_METHOD_POLICY
    user = await db.get(User, user_id)
    if user is None:
        raise RegistrationLookupError("User not found")

    if not payment_method_is_valid(user, policy):
        return PaymentMethodCheck(is_valid=False, error=INVALID_PAYMENT_METHOD_MESSAGE)
    return PaymentMethodCheck(is_valid=True)


async def validate_registration_eligibility(
    db: AsyncSession,
    user_id: uuid.UUID,
    registration_id: uuid.UUID,
    *,
    require_payment_method: bool = False,
    effective_price: Optional[int] = None,
    policy: Optional[PaymentMethodPolicy] = None,
) -> RegistrationCheck:
    """Duplicate check, then payment method when it is required.

    Pass ``effective_price`` only once every discount has been applied.
    """
    duplicate = await can_user_register(db, user_id, registration_id)
    if not duplicate.can_register:
        return duplicate

    needs_payment_method = require_payment_method or (
        effective_price is not None and effective_price > 0
    )
    if needs_payment_method:
        payment_method = await validate_payment_method(db, user_id, policy=policy)
        if not payment_method.is_valid:
            return RegistrationCheck.denied(
                DenialReason.INVALID_PAYMENT_METHOD, payment_method.error
            )

    return RegistrationCheck.allowed()


async def evaluate_registration_attempt(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    registration: Registration,
    category: RegistrationCategory,
    effective_price: int,
    presale_code: Optional[str] = None,
    policy: Optional[PaymentMethodPolicy] = None,
    now: Optional[datetime] = None,
) -> RegistrationCheck:
    """Run every pre-flight rule in order and return the first denial.

    duplicate -> availability -> membership -> capacity -> payment method.
    The capacity answer here is advisory; the slot claim re-checks it under
    a row lock.
    """
    duplicate = await can_user_register(db, user_id, registration.id)
    if not duplicate.can_register:
        return duplicate

    status = registration_status(registration, now=now)
    has_code = presale_code_matches(registration, presale_code)
    if not is_status_available(status, has_presale_code=has_code):
        return RegistrationCheck.denied(
            DenialReason.REGISTRATION_UNAVAILABLE,
            f"Registration is not available ({status.value})",
        )

    membership = await check_membership_eligibility_for_user(
        db,
        registration.required_membership_id,
        category.required_membership_id,
        user_id,
        today=now.date() if now else None,
    )
    if not membership.eligible:
        return RegistrationCheck.denied(
            DenialReason.MEMBERSHIP_REQUIRED, membership.error
        )

    occupancy = await get_category_occupancy(
        db, [category.id], exclude_in_flight_for=user_id
    )
    if not category_availability(category.max_capacity, occupancy[category.id]).is_open:
        return RegistrationCheck.denied(DenialReason.CATEGORY_FULL, CATEGORY_FULL_MESSAGE)

    if effective_price > 0:
        payment_method = await validate_payment_method(db, user_id, policy=policy)
        if not payment_method.is_valid:
            return RegistrationCheck.denied(
                DenialReason.INVALID_PAYMENT_METHOD, payment_method.error
            )

    logger.debug(
        "Registration attempt allowed",
        extra={
            "extra_fields": {
                "user_id": str(user_id),
                "registration_id": str(registration.id),
                "category_id": str(category.id),
                "effective_price": effective_price,
            }
        },
    )
    return RegistrationCheck.allowed()
