"""Background reconciliation and notification tasks for payments service."""

from libs.common.config import get_settings
from libs.common.emails.client import get_email_client
from libs.common.logging import get_logger
from libs.common.notifications import Notification, get_notification_dispatcher
from libs.db.config import AsyncSessionLocal
from services.payments_service.services.reconciliation import (
    reconcile_stale_staged_records,
)
from services.payments_service.stripe_client import StripeClient

logger = get_logger(__name__)


async def reconcile_stale_staged() -> int:
    """Settle staged records whose confirmation never arrived."""
    settings = get_settings()
    try:
        stripe = StripeClient()
    except ValueError as e:
        logger.warning("Skipping staged reconciliation: %s", e)
        return 0

    async with AsyncSessionLocal() as db:
        return await reconcile_stale_staged_records(
            db,
            stripe,
            older_than_minutes=settings.STAGED_RECONCILE_AFTER_MINUTES,
            notifier=get_notification_dispatcher(),
        )


async def send_notification(payload: dict) -> bool:
    """Deliver one queued notification email."""
    notification = Notification.model_validate(payload)
    sent = await get_email_client().send_template(
        template_type=notification.template_type,
        to_email=notification.to_email,
        template_data=notification.template_data,
    )
    if not sent:
        logger.warning(
            "Notification %s was not delivered",
            notification.template_type,
            extra={"extra_fields": {"dedupe_key": notification.dedupe_key}},
        )
    return sent
