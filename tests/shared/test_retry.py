"""
Unit tests for the retry decorator.
"""

import pytest

from shared.errors import AuthError, RateLimitedError, TransportError
from shared.retry import RetryConfig, calculate_delay, retry_on_exception


class TestRetryOnException:
    """Test cases for retry_on_exception."""

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def config(self):
        return RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=False)

    def decorate(self, func, config, sleeps, exceptions=(TransportError,)):
        async def fake_sleep(delay):
            sleeps.append(delay)
        return retry_on_exception(exceptions, config=config, sleep=fake_sleep)(func)

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self, config, sleeps):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransportError()
            return "ok"

        assert await self.decorate(flaky, config, sleeps)() == "ok"
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_reraises_last_exception(self, config, sleeps):
        """Test that the original error type survives exhaustion."""
        async def broken():
            raise TransportError("still down")

        with pytest.raises(TransportError, match="still down"):
            await self.decorate(broken, config, sleeps)()
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_other_exceptions_not_retried(self, config, sleeps):
        async def rejected():
            raise AuthError()

        with pytest.raises(AuthError):
            await self.decorate(rejected, config, sleeps)()
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retry_after_stretches_delay(self, config, sleeps):
        attempts = []

        async def throttled():
            attempts.append(1)
            if len(attempts) == 1:
                raise RateLimitedError(7.0)
            return "ok"

        await self.decorate(throttled, config, sleeps, exceptions=(RateLimitedError,))()
        assert sleeps == [7.0]


class TestCalculateDelay:
    """Test cases for calculate_delay."""

    def test_exponential_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_linear(self):
        config = RetryConfig(base_delay=2.0, jitter=False, backoff_strategy="linear")
        assert calculate_delay(3, config) == 6.0

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=10.0, max_delay=10.0, jitter=True)
        for _ in range(20):
            assert 9.0 <= calculate_delay(1, config) <= 11.0
