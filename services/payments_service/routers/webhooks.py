"""Stripe webhook endpoint."""

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)
from libs.db.session import get_async_db
from services.payments_service.services.reconciliation import handle_stripe_event
from services.payments_service.stripe_client import (
    WebhookSignatureError,
    verify_webhook_signature,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Stripe webhook endpoint (no auth; verified by Stripe-Signature).

    Events are matched to staged records through ``metadata.staging_id``.
    Redelivered events are no-ops.
    """
    settings = get_settings()
    raw = await request.body()
    try:
        verify_webhook_signature(
            raw,
            request.headers.get("stripe-signature"),
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except WebhookSignatureError as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    try:
        event = json.loads(raw.decode("utf-8") or "{}")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload"
        )

    result = await handle_stripe_event(db, event, notifier=notifier)
    logger.info(
        "Stripe webhook %s: %s",
        event.get("type"),
        result,
        extra={"extra_fields": {"event_id": event.get("id"), "result": result}},
    )
    return {"received": True}
