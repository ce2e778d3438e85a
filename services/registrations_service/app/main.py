"""FastAPI application for the Registrations Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from services.registrations_service.routers import admin_router, member_router


def create_app() -> FastAPI:
    """Create and configure the Registrations Service FastAPI app."""
    app = FastAPI(
        title="League Registrations Service",
        version="0.1.0",
        description="Memberships, registrations, capacity and waitlists.",
    )

    add_observability_middleware(app)
    add_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "registrations"}

    app.include_router(member_router)
    app.include_router(admin_router)

    return app


app = create_app()
