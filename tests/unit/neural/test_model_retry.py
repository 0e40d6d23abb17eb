"""
Unit tests for retry logic with exponential backoff.
"""

from unittest.mock import patch

import pytest

from intentmoe.neural.errors import ModelRateLimitError, ModelTimeoutError, ModelTransportError
from intentmoe.neural.retry import exponential_backoff, next_delay


@pytest.fixture
def no_sleep():
    with patch("intentmoe.neural.retry.time.sleep") as mock_sleep:
        yield mock_sleep


class TestExponentialBackoff:
    """Test exponential_backoff decorator."""

    def test_successful_first_try(self, no_sleep):
        @exponential_backoff()
        def success_func(a, b=2):
            return a + b

        assert success_func(1, b=3) == 4
        no_sleep.assert_not_called()

    def test_retry_on_rate_limit(self, no_sleep):
        call_count = {"count": 0}

        @exponential_backoff(max_retries=2, base_delay=0.01)
        def rate_limited_func():
            call_count["count"] += 1
            if call_count["count"] < 3:
                raise ModelRateLimitError("Rate limited", provider="test")
            return "success"

        assert rate_limited_func() == "success"
        assert call_count["count"] == 3
        assert no_sleep.call_count == 2

    def test_rate_limit_honours_retry_after(self, no_sleep):
        calls = []

        @exponential_backoff(max_retries=1, max_delay=8.0)
        def func():
            calls.append(1)
            if len(calls) == 1:
                raise ModelRateLimitError("Rate limited", provider="test", retry_after=3.0)
            return "ok"

        assert func() == "ok"
        no_sleep.assert_called_once_with(3.0)

    def test_max_retries_exceeded(self, no_sleep):
        @exponential_backoff(max_retries=2, base_delay=0.01)
        def always_limited():
            raise ModelRateLimitError("Rate limited", provider="test")

        with pytest.raises(ModelRateLimitError):
            always_limited()
        assert no_sleep.call_count == 2

    def test_delay_grows_and_is_capped(self, no_sleep):
        @exponential_backoff(max_retries=4, base_delay=1.0, max_delay=5.0)
        def failing():
            raise ModelTransportError("Server error", provider="test", status_code=502)

        with pytest.raises(ModelTransportError):
            failing()

        delays = [c.args[0] for c in no_sleep.call_args_list]
        assert delays == [2.0, 4.0, 5.0, 5.0]

    @pytest.mark.parametrize("status_code", [400, 401, None])
    def test_non_retryable_transport_error(self, no_sleep, status_code):
        call_count = {"count": 0}

        @exponential_backoff(max_retries=3)
        def func():
            call_count["count"] += 1
            raise ModelTransportError("Rejected", provider="test", status_code=status_code)

        with pytest.raises(ModelTransportError):
            func()
        assert call_count["count"] == 1
        no_sleep.assert_not_called()

    def test_timeout_not_retried(self, no_sleep):
        call_count = {"count": 0}

        @exponential_backoff(max_retries=3)
        def func():
            call_count["count"] += 1
            raise ModelTimeoutError("Timed out", provider="test")

        with pytest.raises(ModelTimeoutError):
            func()
        assert call_count["count"] == 1


class TestNextDelay:
    """Test the retry classifier."""

    def test_server_error_grows_exponentially(self):
        error = ModelTransportError("Bad gateway", provider="test", status_code=503)

        assert next_delay(error, 1, base_delay=0.5, max_delay=8.0) == 1.0
        assert next_delay(error, 3, base_delay=0.5, max_delay=8.0) == 4.0
        assert next_delay(error, 10, base_delay=0.5, max_delay=8.0) == 8.0

    def test_retry_after_is_capped(self):
        error = ModelRateLimitError("Slow down", provider="test", retry_after=30.0)

        assert next_delay(error, 1, base_delay=0.5, max_delay=8.0) == 8.0

    def test_client_errors_and_timeouts_are_final(self):
        assert next_delay(ModelTransportError("Bad", provider="t", status_code=404), 1, 0.5, 8.0) is None
        assert next_delay(ModelTimeoutError("Slow", provider="t"), 1, 0.5, 8.0) is None
