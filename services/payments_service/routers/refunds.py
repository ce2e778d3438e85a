"""Admin refunds and refund previews."""

from fastapi import APIRouter, Depends, HTTPException, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.schemas import (
    DiscountRefundInfoResponse,
    RefundLineItemResponse,
    RefundPreviewResponse,
    RefundRequest,
    RefundResponse,
)
from services.payments_service.services import refunds
from services.payments_service.services.staging import StagingError
from services.payments_service.stripe_client import StripeClient, get_stripe_client
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/refunds", tags=["admin-refunds"])
logger = get_logger(__name__)


@router.post("/preview", response_model=RefundPreviewResponse)
async def preview_refund(
    payload: RefundRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Line items and amounts a refund would stage. Nothing is written."""
    try:
        plan = await refunds.preview_refund(
            db,
            payment_id=payload.payment_id,
            refund_type=payload.refund_type,
            amount=payload.amount,
            discount_code=payload.discount_code,
        )
    except refunds.RefundValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return RefundPreviewResponse(
        payment_id=payload.payment_id,
        refund_type=plan.refund_type,
        kind=plan.kind.value,
        total_amount=plan.amount,
        original_amount=plan.payment.final_amount,
        available_for_refund=plan.available,
        line_items=[
            RefundLineItemResponse.model_validate(item) for item in plan.line_items
        ],
        discount_info=(
            DiscountRefundInfoResponse.model_validate(plan.discount)
            if plan.discount
            else None
        ),
    )


@router.post("", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def create_refund(
    payload: RefundRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    try:
        outcome = await refunds.process_refund(
            db,
            stripe,
            notifier,
            payment_id=payload.payment_id,
            refund_type=payload.refund_type,
            amount=payload.amount,
            discount_code=payload.discount_code,
            reason=payload.reason,
            processed_by=admin.user_id,
        )
    except refunds.RefundValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except StagingError as e:
        logger.error(
            "Refund staging failed for payment %s: %s", payload.payment_id, e.message
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process refund",
        )
    except refunds.ProcessorError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    return RefundResponse(
        refund_id=outcome.refund_id,
        staging_id=outcome.staging_id,
        status=outcome.status,
        kind=outcome.kind.value,
        amount=outcome.amount,
        message=outcome.message,
        registrations_released=outcome.registrations_released,
    )
