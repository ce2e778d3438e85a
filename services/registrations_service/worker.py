"""ARQ worker for registrations maintenance."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_sweep_abandoned_claims(ctx: dict):
    from services.registrations_service.tasks import sweep_abandoned_claims

    logger.info("Running: sweep_abandoned_claims")
    await sweep_abandoned_claims()


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_sweep_abandoned_claims,
    ]

    cron_jobs = [
        cron(
            task_sweep_abandoned_claims,
            minute=set(range(0, 60)),
            run_at_startup=True,
        ),
    ]
