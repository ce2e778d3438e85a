"""Post-commit notification dispatch.

Financial flows emit a ``Notification`` only after their database
transaction has committed. The default dispatcher enqueues an arq job on the
payments worker, keyed by ``dedupe_key`` so that replaying the same
confirmation (webhook redelivery, manual retry) cannot queue a second email.

Dispatch is fire-and-forget: errors are logged and swallowed here, never
propagated into the flow that produced the notification.
"""

from functools import lru_cache
from typing import Any, Protocol

from pydantic import BaseModel, Field

from libs.common.arq_config import get_arq_pool
from libs.common.logging import get_logger

logger = get_logger(__name__)

SEND_NOTIFICATION_TASK = "task_send_notification"


class Notification(BaseModel):
    template_type: str
    to_email: str
    template_data: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str


class NotificationDispatcher(Protocol):
    async def dispatch(self, notification: Notification) -> None: ...


class ArqNotificationDispatcher:
    """Queue notifications for the payments worker."""

    async def dispatch(self, notification: Notification) -> None:
        try:
            pool = await get_arq_pool()
            await pool.enqueue_job(
                SEND_NOTIFICATION_TASK,
                notification.model_dump(),
                _job_id=f"notify:{notification.dedupe_key}",
            )
        except Exception as e:
            logger.error(
                "Failed to queue notification %s",
                notification.template_type,
                extra={
                    "extra_fields": {
                        "dedupe_key": notification.dedupe_key,
                        "to_email": notification.to_email,
                        "error": str(e),
                    }
                },
            )


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency returning the process-wide dispatcher."""
    return ArqNotificationDispatcher()
