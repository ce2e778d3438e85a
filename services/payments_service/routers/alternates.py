"""Admin selection of alternates for a game."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.schemas import (
    AlternateChargeResponse,
    AlternateSelectRequest,
    AlternateSelectResponse,
)
from services.payments_service.services.alternates import select_alternates
from services.payments_service.stripe_client import StripeClient, get_stripe_client
from services.registrations_service.services.denials import AlternateError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin/alternates", tags=["admin-alternates"])


@router.post("/games/{game_id}/select", response_model=AlternateSelectResponse)
async def select_for_game(
    game_id: uuid.UUID,
    payload: AlternateSelectRequest,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    stripe: StripeClient = Depends(get_stripe_client),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Charge each listed alternate and record them for the game.

    Alternates already selected for the game are skipped. A declined card
    shows up in that alternate's result and does not stop the rest.
    """
    try:
        results = await select_alternates(
            db,
            stripe,
            notifier,
            game_id=game_id,
            user_ids=payload.user_ids,
            selected_by=admin.uuid,
        )
    except AlternateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return AlternateSelectResponse(
        game_id=game_id,
        selected=sum(1 for r in results if r.selected),
        results=[
            AlternateChargeResponse(
                user_id=r.user_id,
                status=r.outcome.status.value,
                reason=r.outcome.reason.value if r.outcome.reason else None,
                error=r.outcome.error,
                payment_id=r.outcome.payment_id,
                amount_charged=r.outcome.price.net if r.selected else None,
            )
            for r in results
        ],
    )
