"""
HTTP infrastructure with retry logic for embedding and search services.

Provides:
- RetryConfig: exponential backoff configuration
- HTTPClient: async JSON client that retries 429/5xx and connection
  errors, then maps failures onto the error taxonomy

Request headers are never logged; they carry API keys.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

from src.errors import (
    ConfigurationError,
    NotFoundError,
    SemanticStoreError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class RetryConfig:
    """
    Exponential backoff configuration for HTTP retries.

    Formula: min(max_backoff, base_delay * 2^attempt) * (1 + random(0, jitter_factor))
    """

    max_retries: int = 3
    max_backoff_seconds: float = 30.0
    base_delay: float = 1.0
    jitter_factor: float = 0.1

    def calculate_backoff(self, attempt: int) -> float:
        """
        Calculate backoff duration for a given retry attempt.

        Args:
            attempt: The retry attempt number (0-indexed)

        Returns:
            Backoff duration in seconds with jitter applied
        """
        delay = min(self.base_delay * (2**attempt), self.max_backoff_seconds)
        return delay + delay * self.jitter_factor * random.random()

    def is_retryable_status(self, status_code: int) -> bool:
        """429 and 500/502/503/504 are retried."""
        return status_code in RETRYABLE_STATUS_CODES

    def is_retryable_exception(self, exc: Exception) -> bool:
        """Timeouts, connection and read errors are retried."""
        return isinstance(
            exc,
            (
                httpx.TimeoutException,
                httpx.ConnectError,
                httpx.ReadError,
            ),
        )


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(
    response: httpx.Response, *, operation: str, location: str | None
) -> SemanticStoreError:
    """Map a non-retryable error response to the error taxonomy."""
    status = response.status_code
    message = f"HTTP {status} from service"
    if status in (401, 403):
        return ConfigurationError(
            f"{message}: credentials rejected", operation=operation, location=location
        )
    if status == 404:
        return NotFoundError(message, operation=operation, location=location)
    if status in RETRYABLE_STATUS_CODES:
        return TransientError(
            message, operation=operation, location=location, retry_after=_retry_after(response)
        )
    return ValidationError(
        f"{message}: {response.text[:200]}", operation=operation, location=location
    )


class HTTPClient:
    """
    Async JSON client with retry logic.

    The underlying httpx.AsyncClient may be injected (tests pass one
    built on httpx.MockTransport); otherwise one is created on first use.

    Example:
        async with HTTPClient(RetryConfig(max_retries=3)) as client:
            response = await client.request(
                "POST", url, json_body={...}, headers={"api-key": key},
                operation="embed",
            )
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HTTPClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        location: str | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """
        Execute a request, retrying retryable statuses and errors.

        Raises:
            TransientError: Retries exhausted
            ConfigurationError: 401/403
            NotFoundError: 404
            ValidationError: Any other 4xx
        """
        client = self._ensure_client()
        max_retries = self.retry_config.max_retries

        for attempt in range(max_retries + 1):
            try:
                response = await client.request(
                    method, url, params=params, headers=headers, json=json_body
                )
            except httpx.HTTPError as e:
                if not self.retry_config.is_retryable_exception(e):
                    raise TransientError(
                        f"HTTP request failed: {type(e).__name__}",
                        operation=operation,
                        location=location,
                    ) from e
                if attempt < max_retries:
                    backoff = self.retry_config.calculate_backoff(attempt)
                    logger.warning(
                        f"Retryable error {type(e).__name__} for {operation}, "
                        f"attempt {attempt + 1}/{max_retries + 1}, "
                        f"backing off {backoff:.2f}s"
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise TransientError(
                    f"Request failed after {attempt + 1} attempts: {type(e).__name__}",
                    operation=operation,
                    location=location,
                ) from e

            if self.retry_config.is_retryable_status(response.status_code):
                if attempt < max_retries:
                    backoff = _retry_after(response)
                    if backoff is None:
                        backoff = self.retry_config.calculate_backoff(attempt)
                    logger.warning(
                        f"Retryable status {response.status_code} for {operation}, "
                        f"attempt {attempt + 1}/{max_retries + 1}, "
                        f"backing off {backoff:.2f}s"
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise TransientError(
                    f"Request failed with status {response.status_code} "
                    f"after {attempt + 1} attempts",
                    operation=operation,
                    location=location,
                )

            if response.status_code >= 400:
                raise error_for_status(response, operation=operation, location=location)
            return response

        raise TransientError(
            f"Request failed after {max_retries + 1} attempts",
            operation=operation,
            location=location,
        )
