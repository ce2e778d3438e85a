"""ARQ worker for staged-record reconciliation and notification emails."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_reconcile_stale_staged(ctx: dict):
    from services.payments_service.tasks import reconcile_stale_staged

    logger.info("Running: reconcile_stale_staged")
    await reconcile_stale_staged()


async def task_send_notification(ctx: dict, payload: dict):
    from services.payments_service.tasks import send_notification

    await send_notification(payload)


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_reconcile_stale_staged,
        task_send_notification,
    ]

    cron_jobs = [
        cron(
            task_reconcile_stale_staged,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
    ]
