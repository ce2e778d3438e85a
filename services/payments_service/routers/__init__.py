"""Routers package."""

from services.payments_service.routers.accounting import router as accounting_router
from services.payments_service.routers.alternates import router as alternates_router
from services.payments_service.routers.member import router as member_router
from services.payments_service.routers.refunds import router as refunds_router
from services.payments_service.routers.waitlists import router as waitlists_router
from services.payments_service.routers.webhooks import router as webhooks_router

__all__ = [
    "accounting_router",
    "alternates_router",
    "member_router",
    "refunds_router",
    "waitlists_router",
    "webhooks_router",
]
