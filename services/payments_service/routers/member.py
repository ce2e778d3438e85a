"""Member-facing registration and membership purchases."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.schemas import (
    PriceBreakdownResponse,
    PurchaseMembershipRequest,
    PurchaseRegistrationRequest,
    PurchaseResponse,
)
from services.payments_service.services.charges import (
    PurchaseOutcome,
    PurchaseStatus,
    purchase_registration,
)
from services.payments_service.services.discounts import DiscountCodeError
from services.payments_service.services.memberships import (
    MembershipPurchaseError,
    purchase_membership,
)
from services.payments_service.stripe_client import StripeClient, get_stripe_client
from services.registrations_service.services.denials import (
    DENIAL_STATUS_CODES,
    RegistrationLookupError,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)

_SUCCESS_STATUS_CODES = {
    PurchaseStatus.COMPLETED: status.HTTP_201_CREATED,
    PurchaseStatus.PROCESSING: status.HTTP_202_ACCEPTED,
}


def _purchase_response(outcome: PurchaseOutcome) -> PurchaseResponse:
    return PurchaseResponse(
        status=outcome.status.value,
        reason=outcome.reason.value if outcome.reason else None,
        error=outcome.error,
        discount_message=outcome.discount_message,
        price=(
            PriceBreakdownResponse.model_validate(outcome.price)
            if outcome.price
            else None
        ),
        staging_id=outcome.staging_id,
        payment_id=outcome.payment_id,
        user_registration_id=outcome.user_registration_id,
        user_membership_id=outcome.user_membership_id,
    )


def respond_to_outcome(outcome: PurchaseOutcome, response: Response) -> PurchaseResponse:
    """Raise for denials and failed charges; otherwise set 201 or 202."""
    if outcome.status == PurchaseStatus.DENIED:
        raise HTTPException(
            status_code=DENIAL_STATUS_CODES[outcome.reason],
            detail={"reason": outcome.reason.value, "error": outcome.error},
        )
    if outcome.status == PurchaseStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=outcome.error
        )

    response.status_code = _SUCCESS_STATUS_CODES[outcome.status]
    return _purchase_response(outcome)


@router.post(
    "/registrations/{registration_id}/purchase", response_model=PurchaseResponse
)
async def purchase(
    registration_id: uuid.UUID,
    payload: PurchaseRegistrationRequest,
    response: Response,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Register and pay for a category with the saved payment method.

    201 when paid (or free), 202 when Stripe is still settling the charge.
    Denials carry ``{"reason", "error"}`` so the client can route a full
    category to the waitlist.
    """
    try:
        outcome = await purchase_registration(
            db,
            stripe,
            notifier,
            user_id=current_user.uuid,
            registration_id=registration_id,
            category_id=payload.category_id,
            discount_code=payload.discount_code,
            presale_code=payload.presale_code,
        )
    except RegistrationLookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except DiscountCodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return respond_to_outcome(outcome, response)


@router.post("/memberships/{membership_id}/purchase", response_model=PurchaseResponse)
async def purchase_membership_route(
    membership_id: uuid.UUID,
    payload: PurchaseMembershipRequest,
    response: Response,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Buy or extend a membership: 12 months at the annual price, or monthly."""
    try:
        outcome = await purchase_membership(
            db,
            stripe,
            notifier,
            user_id=current_user.uuid,
            membership_id=membership_id,
            months=payload.months,
            discount_code=payload.discount_code,
        )
    except MembershipPurchaseError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except DiscountCodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return respond_to_outcome(outcome, response)
