"""Background maintenance tasks for the registrations service."""

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.registrations_service.services.capacity import release_abandoned_claims

logger = get_logger(__name__)


async def sweep_abandoned_claims() -> int:
    """Release slot claims whose payment never completed."""
    async with AsyncSessionLocal() as db:
        released = await release_abandoned_claims(db)
    logger.info("Abandoned claim sweep released %d rows", released)
    return released
