"""FastAPI application for the Payments Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from services.payments_service.routers import (
    accounting_router,
    alternates_router,
    member_router,
    refunds_router,
    waitlists_router,
    webhooks_router,
)


def create_app() -> FastAPI:
    """Create and configure the Payments Service FastAPI app."""
    app = FastAPI(
        title="League Payments Service",
        version="0.1.0",
        description="Registration charges, refunds and staged accounting records.",
    )

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "payments"}

    app.include_router(member_router)
    app.include_router(webhooks_router)
    app.include_router(refunds_router)
    app.include_router(accounting_router)
    app.include_router(waitlists_router)
    app.include_router(alternates_router)

    return app


app = create_app()
