"""
Unit tests for retry mechanism
Tests capped backoff, the retry decorator and the timeout race
"""
import pytest
import asyncio

from bi_assistant.errors import QueryError, TransportError, ValidationError
from bi_assistant.utils import backoff_delay, is_retryable, race_with_timeout, with_retry


class TestBackoff:
    """Test the capped exponential delay"""

    def test_doubles_from_base(self):
        """Test delay(n) = base * 2^(n-1) below the cap"""
        assert [backoff_delay(n, base=5, cap=300) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped(self):
        """Test delays never exceed the cap"""
        assert backoff_delay(7, base=5, cap=300) == 300
        assert backoff_delay(20, base=5, cap=300) == 300

    def test_monotonic(self):
        """Test delays never decrease as attempts grow"""
        delays = [backoff_delay(n, base=2, cap=20) for n in range(1, 12)]
        assert delays == sorted(delays)
        assert max(delays) == 20

    def test_attempt_below_one_uses_base(self):
        assert backoff_delay(0, base=5, cap=300) == 5


class TestRetryDecorator:
    """Test retry logic around retryable errors"""

    @pytest.mark.asyncio
    async def test_successful_call_no_retry(self):
        """Test successful call on first attempt requires no retry"""
        call_count = 0

        @with_retry(max_attempts=3, base_seconds=0)
        async def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_func() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_transport_error_then_success(self):
        """Test transient transport failures are retried"""
        call_count = 0

        @with_retry(max_attempts=3, base_seconds=0)
        async def flaky_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise TransportError("temporary failure")
            return "success"

        assert await flaky_func() == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion_reraises_last_error(self):
        """Test the last error surfaces once attempts run out"""
        call_count = 0

        @with_retry(max_attempts=2, base_seconds=0)
        async def always_fails():
            nonlocal call_count
            call_count += 1
            raise TransportError("always fails")

        with pytest.raises(TransportError, match="always fails"):
            await always_fails()
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self):
        """Test query and validation errors are not retried"""
        call_count = 0

        @with_retry(max_attempts=4, base_seconds=0)
        async def rejected():
            nonlocal call_count
            call_count += 1
            raise QueryError("bad DAX")

        with pytest.raises(QueryError):
            await rejected()
        assert call_count == 1

    def test_retryable_classification(self):
        assert is_retryable(TransportError("x"))
        assert not is_retryable(ValidationError("x"))
        assert is_retryable(asyncio.TimeoutError())
        assert not is_retryable(ValueError("x"))


class TestTimeoutRace:
    """Test racing a call against a deadline"""

    @pytest.mark.asyncio
    async def test_fast_call_wins(self):
        async def fast():
            return 42

        assert await race_with_timeout(fast(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_slow_call_raises_transport_error(self):
        """Test timeout is reported as a retryable transport error"""
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(TransportError, match="slow call timed out"):
            await race_with_timeout(slow(), 0.01, label="slow call")

    @pytest.mark.asyncio
    async def test_losing_call_is_cancelled(self):
        """Test the abandoned branch does not keep running"""
        finished = False

        async def slow():
            nonlocal finished
            await asyncio.sleep(0.2)
            finished = True

        with pytest.raises(TransportError):
            await race_with_timeout(slow(), 0.01)
        await asyncio.sleep(0.3)
        assert finished is False
