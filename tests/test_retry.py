"""Tests for retry utility."""

from unittest.mock import AsyncMock, call, patch

import httpx
import pytest

from kubetally.utils.retry import async_retry


@pytest.fixture
def no_sleep():
    """Record backoff sleeps instead of waiting."""
    with patch("kubetally.utils.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestRetryDecorator:
    """Tests for the retry decorator."""

    async def test_success_on_first_try(self, no_sleep):
        """Test that function succeeds on first try without retrying."""
        call_count = 0

        @async_retry(max_attempts=3)
        async def list_nodes():
            nonlocal call_count
            call_count += 1
            return ["node-1"]

        assert await list_nodes() == ["node-1"]
        assert call_count == 1
        no_sleep.assert_not_awaited()

    async def test_retry_on_transport_error(self, no_sleep):
        """Test that transient connection failures are retried."""
        call_count = 0

        @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        async def flaky_call():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.ConnectError("connection refused")
            return "ok"

        assert await flaky_call() == "ok"
        assert call_count == 3

    async def test_max_retries_exceeded(self, no_sleep):
        """Test that the last exception is raised when attempts run out."""
        call_count = 0

        @async_retry(max_attempts=3)
        async def always_failing():
            nonlocal call_count
            call_count += 1
            raise ValueError("Always fails")

        with pytest.raises(ValueError, match="Always fails"):
            await always_failing()

        assert call_count == 3
        assert no_sleep.await_count == 2

    async def test_exponential_backoff(self, no_sleep):
        """Test that delays grow exponentially and are capped."""

        @async_retry(max_attempts=5, backoff_base=3.0, backoff_max=10.0)
        async def always_failing():
            raise ValueError("Retry")

        with pytest.raises(ValueError):
            await always_failing()

        assert no_sleep.await_args_list == [call(1.0), call(3.0), call(9.0), call(10.0)]

    async def test_specific_exception_only(self, no_sleep):
        """Test that other exception types are not retried."""
        call_count = 0

        @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        async def http_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Wrong exception type")

        with pytest.raises(TypeError):
            await http_error()
        assert call_count == 1
