"""
Error handling and sanitization

- MarketplaceError subclasses map to the HTTP status in EXCEPTION_CATALOG
- Unhandled exceptions are logged with traceback and returned as a generic 500
- Store/driver details never reach the client outside DEBUG
"""
import logging
import traceback

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.config import settings
from marketplace.core.exceptions import EXCEPTION_CATALOG, MarketplaceError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "sqlalchemy",
    "asyncpg",
    "aiosqlite",
    "postgresql",
    "sqlite",
    "traceback",
    "file \"",
]

GENERIC_MESSAGE = "An internal error occurred. Please try again later."


def is_sensitive_error(message: str) -> bool:
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(message: str) -> str:
    """Return a message safe to show a client."""
    if settings.DEBUG:
        return message
    if is_sensitive_error(message):
        return GENERIC_MESSAGE
    if len(message) > 200:
        return message[:200] + "..."
    return message


def status_for(exc: MarketplaceError) -> int:
    entry = EXCEPTION_CATALOG.get(exc.code)
    return entry["http_status"] if entry else 500


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Render a domain error as {"error", "message", "details"}."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(
            f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
            extra={"error": exc.to_dict()},
        )
        message = sanitize_error_message(exc.message)
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        message = exc.message

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": message,
            "details": exc.details,
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize the response.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            if settings.DEBUG:
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "internal_error",
                        "message": str(e),
                        "type": type(e).__name__,
                        "error_id": error_id,
                    }
                )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "error_id": error_id,
                }
            )
