"""
Rate limiting

SlowAPI limiter with in-memory storage. Checkout is the only write path
that holds stock, so it carries RATE_LIMIT_CHECKOUT on top of the default
limit. A tripped limit is rendered like every other MarketplaceError
(RATE_LIMITED, 429) with a Retry-After matching the limit's window.
"""
import logging

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from marketplace.core.config import settings
from marketplace.core.error_handler import marketplace_error_handler
from marketplace.core.exceptions import RateLimited
from marketplace.core.monitoring import metrics

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Originating client: first X-Forwarded-For hop behind a proxy, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    enabled=settings.RATE_LIMIT_ENABLED,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)


def retry_after_seconds(exc: RateLimitExceeded) -> int:
    """Length of the tripped limit's window, e.g. 60 for "10 per 1 minute"."""
    return int(exc.limit.limit.get_expiry())


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    error = RateLimited(
        limit=exc.detail,
        retry_after=retry_after_seconds(exc),
        details={"path": request.url.path},
    )
    metrics.increment("rate_limited_total")
    logger.warning(
        f"Rate limit {error.limit} exceeded by {get_client_ip(request)} "
        f"on {request.method} {request.url.path}"
    )

    response = await marketplace_error_handler(request, error)
    response.headers["Retry-After"] = str(error.retry_after)
    return response
