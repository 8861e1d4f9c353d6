"""
Retry and timeout helpers for transient failures.

Storage strategies and vector backends translate their infrastructure
errors into TransientError; these helpers retry those (and only those)
with exponential backoff, and turn operation timeouts into
TransientError so they follow the same path.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from src.errors import TransientError
from src.resilience.backoff import ExponentialBackoff

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    operation: str,
    location: str | None = None,
) -> T:
    """
    Await with an operation timeout.

    Raises:
        TransientError: If the timeout elapses
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientError(
            f"Operation timed out after {timeout:.1f}s",
            operation=operation,
            location=location,
        ) from e


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    location: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    timeout: float | None = None,
    backoff: ExponentialBackoff | None = None,
) -> T:
    """
    Run func, retrying TransientError up to max_retries times.

    Each attempt is bounded by timeout (if given). Any other exception
    propagates immediately. When retries are exhausted the last
    TransientError is raised.

    Args:
        func: Zero-argument coroutine factory (called once per attempt)
        operation: Operation name for logs and error context
        location: Model location for logs and error context
        max_retries: Retries after the first attempt
        timeout: Per-attempt timeout in seconds
        backoff: Backoff policy (default 1s base, doubling)

    Returns:
        The result of the first successful attempt
    """
    backoff = backoff or ExponentialBackoff()

    for attempt in range(max_retries + 1):
        try:
            return await with_timeout(
                func(), timeout, operation=operation, location=location
            )
        except TransientError as e:
            if attempt >= max_retries:
                logger.error(
                    "Transient failure, retries exhausted",
                    operation=operation,
                    location=location,
                    attempts=attempt + 1,
                    error=e.message,
                )
                raise

            delay = e.retry_after if e.retry_after is not None else backoff.next_delay()
            logger.warning(
                "Transient failure, retrying",
                operation=operation,
                location=location,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=e.message,
            )
            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise AssertionError("retry loop exited without result")
