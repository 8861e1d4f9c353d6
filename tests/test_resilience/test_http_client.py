"""Tests for the retrying HTTP client."""

import httpx
import pytest
import respx

from src.errors import ConfigurationError, NotFoundError, TransientError, ValidationError
from src.resilience.http import HTTPClient, RetryConfig, error_for_status

URL = "https://embeddings.example.com/v1/embeddings"


def fast_retry(max_retries: int = 3) -> RetryConfig:
    return RetryConfig(max_retries=max_retries, base_delay=0.0, jitter_factor=0.0)


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_default_values(self):
        """Should have sensible defaults."""
        config = RetryConfig()

        assert config.max_retries == 3
        assert config.max_backoff_seconds == 30.0
        assert config.base_delay == 1.0
        assert config.jitter_factor == 0.1

    def test_calculate_backoff_exponential(self):
        """Should calculate exponential backoff."""
        config = RetryConfig(base_delay=1.0, jitter_factor=0.0)

        assert config.calculate_backoff(0) == 1.0
        assert config.calculate_backoff(1) == 2.0
        assert config.calculate_backoff(2) == 4.0

    def test_calculate_backoff_capped(self):
        """Should cap at max_backoff_seconds."""
        config = RetryConfig(base_delay=1.0, max_backoff_seconds=5.0, jitter_factor=0.0)
        assert config.calculate_backoff(10) == 5.0

    def test_is_retryable_status(self):
        """Should classify retryable status codes."""
        config = RetryConfig()

        for status in (429, 500, 502, 503, 504):
            assert config.is_retryable_status(status)
        for status in (200, 400, 401, 403, 404, 409):
            assert not config.is_retryable_status(status)

    def test_is_retryable_exception(self):
        """Timeouts and connection errors should be retried."""
        config = RetryConfig()

        assert config.is_retryable_exception(httpx.ConnectError("refused"))
        assert config.is_retryable_exception(httpx.ReadTimeout("slow"))
        assert not config.is_retryable_exception(ValueError("nope"))


class TestErrorForStatus:
    """Tests for status code mapping."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, ConfigurationError),
            (403, ConfigurationError),
            (404, NotFoundError),
            (429, TransientError),
            (503, TransientError),
            (400, ValidationError),
            (422, ValidationError),
        ],
    )
    def test_mapping(self, status, expected):
        """Each status maps onto the error taxonomy."""
        response = httpx.Response(status, request=httpx.Request("POST", URL))
        error = error_for_status(response, operation="embed", location=None)
        assert isinstance(error, expected)
        assert error.operation == "embed"

    def test_retry_after_is_parsed(self):
        """Retry-After on a throttled response is carried on the error."""
        response = httpx.Response(
            429, headers={"retry-after": "7"}, request=httpx.Request("POST", URL)
        )
        error = error_for_status(response, operation="embed", location=None)
        assert error.retry_after == 7.0


class TestHTTPClient:
    """Tests for HTTPClient."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_successful_request(self):
        """Should return the response on success."""
        respx.post(URL).mock(return_value=httpx.Response(200, json={"ok": True}))

        async with HTTPClient(fast_retry()) as client:
            response = await client.request("POST", URL, operation="embed", json_body={"a": 1})

        assert response.json() == {"ok": True}

    @pytest.mark.asyncio
    @respx.mock
    async def test_retries_on_503(self):
        """Should retry a 503 and return the later success."""
        route = respx.post(URL).mock(
            side_effect=[httpx.Response(503), httpx.Response(200, json={"ok": True})]
        )

        async with HTTPClient(fast_retry()) as client:
            response = await client.request("POST", URL, operation="embed")

        assert response.status_code == 200
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_retry_exhaustion_raises_transient(self):
        """Should raise TransientError after max_retries + 1 attempts."""
        route = respx.post(URL).mock(return_value=httpx.Response(429))

        async with HTTPClient(fast_retry(max_retries=2)) as client:
            with pytest.raises(TransientError):
                await client.request("POST", URL, operation="embed")

        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error_retried(self):
        """Connection errors are retried like retryable statuses."""
        route = respx.post(URL).mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(200, json={})]
        )

        async with HTTPClient(fast_retry()) as client:
            response = await client.request("POST", URL, operation="embed")

        assert response.status_code == 200
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_unauthorized_not_retried(self):
        """401 should raise ConfigurationError without retrying."""
        route = respx.post(URL).mock(return_value=httpx.Response(401))

        async with HTTPClient(fast_retry()) as client:
            with pytest.raises(ConfigurationError):
                await client.request("POST", URL, operation="embed")

        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_request_is_validation_error(self):
        """Other 4xx responses are validation errors."""
        respx.post(URL).mock(return_value=httpx.Response(400, text="bad input"))

        async with HTTPClient(fast_retry()) as client:
            with pytest.raises(ValidationError, match="bad input"):
                await client.request("POST", URL, operation="embed")

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self):
        """An injected httpx client belongs to the caller."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        inner = httpx.AsyncClient(transport=transport)

        client = HTTPClient(fast_retry(), client=inner)
        await client.request("GET", URL, operation="ping")
        await client.close()

        assert not inner.is_closed
        await inner.aclose()
