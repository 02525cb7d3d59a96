"""
Transaction retry with exponential backoff

Used by checkout to ride out transient store failures (connection drops,
deadlocks, serialization failures). Business errors are never retried.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from marketplace.core.exceptions import TransactionFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_db_error(error: BaseException) -> bool:
    """Driver errors that mean the transaction did not happen and may be retried."""
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.1           # Base delay in seconds
    max_delay: float = 2.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)


def calculate_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
    """
    delay = config.base_delay * (config.exponential_base ** attempt)

    # Add random jitter (±jitter_factor of the delay)
    jitter = delay * config.jitter_factor * (2 * random.random() - 1)
    delay += jitter

    return max(0.0, min(delay, config.max_delay))


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "transaction",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying transient store failures.

    TransactionFailure and transient driver errors are retried up to
    config.max_retries times; after that a TransactionFailure is raised.
    Any other exception propagates immediately.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except (TransactionFailure, DBAPIError) as e:
            if isinstance(e, DBAPIError) and not is_transient_db_error(e):
                raise
            if attempt >= config.max_retries:
                logger.error(
                    "%s failed after %d attempt(s): %s",
                    description, attempt + 1, e,
                )
                if isinstance(e, TransactionFailure):
                    e.attempts = attempt + 1
                    e.details["attempts"] = attempt + 1
                    raise
                raise TransactionFailure(
                    f"{description} failed: {type(e).__name__}",
                    attempts=attempt + 1,
                ) from e

            delay = calculate_backoff(config, attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description, attempt + 1, config.max_retries + 1, delay, e,
            )
            attempt += 1
            await sleep(delay)
