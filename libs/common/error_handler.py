"""Global exception handlers shared by every service app.

Unexpected errors are logged verbatim for operators and returned to callers
as a generic message with the request id for correlation.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(
        "Database error on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
        extra={"extra_fields": {"error": str(exc)}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": GENERIC_ERROR_MESSAGE, "request_id": get_request_id()},
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
        extra={"extra_fields": {"error": str(exc)}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": GENERIC_ERROR_MESSAGE, "request_id": get_request_id()},
    )


def add_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
