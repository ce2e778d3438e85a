"""Admin selection from category waitlists."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Response
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.routers.member import respond_to_outcome
from services.payments_service.schemas import PurchaseResponse, WaitlistSelectRequest
from services.payments_service.services.waitlist import (
    WaitlistSelectionError,
    select_from_waitlist,
)
from services.payments_service.stripe_client import StripeClient, get_stripe_client
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/waitlists", tags=["admin-waitlists"])


@router.post("/{entry_id}/select", response_model=PurchaseResponse)
async def select_entry(
    entry_id: uuid.UUID,
    payload: WaitlistSelectRequest,
    response: Response,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Register a waitlisted player and charge their saved payment method.

    ``override_price`` replaces the category price; a discount code saved
    on the entry still applies on top of it.
    """
    try:
        outcome = await select_from_waitlist(
            db,
            stripe,
            notifier,
            entry_id=entry_id,
            override_price=payload.override_price,
            selected_by=admin.uuid,
        )
    except WaitlistSelectionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return respond_to_outcome(outcome, response)
