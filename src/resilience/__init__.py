"""
Retry and timeout policy for storage, embedding and vector-backend calls.

Main components:
- ExponentialBackoff: delay calculation with jitter
- retry_transient: retries TransientError up to 3 times
- with_timeout: maps operation timeouts to TransientError
- HTTPClient / RetryConfig: retrying JSON client for HTTP services
"""

from src.resilience.backoff import ExponentialBackoff
from src.resilience.http import HTTPClient, RetryConfig
from src.resilience.retry import DEFAULT_MAX_RETRIES, retry_transient, with_timeout

__all__ = [
    "DEFAULT_MAX_RETRIES",
    "ExponentialBackoff",
    "HTTPClient",
    "RetryConfig",
    "retry_transient",
    "with_timeout",
]
