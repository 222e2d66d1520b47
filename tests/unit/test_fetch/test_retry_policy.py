"""Unit tests for retry policy decisions and backoff delays."""

from datetime import UTC, datetime

import pytest

from resilient_fetch.fetch.backoff import (
    apply_retry_after,
    compute_backoff_delay_ms,
    parse_retry_after_ms,
)
from resilient_fetch.fetch.errors import (
    CircuitOpenError,
    ClientDestroyedError,
    FetchError,
    FetchErrorClass,
    HTTPError,
    NetworkError,
    ResponseSizeExceededError,
)
from resilient_fetch.fetch.models import RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy model."""

    def test_default_values(self) -> None:
        """Test default retry policy values."""
        policy = RetryPolicy()

        assert policy.max_retries == 3
        assert policy.base_delay_ms == 500
        assert policy.max_delay_ms == 30000
        assert policy.backoff_factor == 2.0
        assert policy.jitter_ratio == 0.25

    def test_custom_values(self) -> None:
        """Test custom retry policy values."""
        policy = RetryPolicy(
            max_retries=5,
            base_delay_ms=100,
            max_delay_ms=60000,
            backoff_factor=1.5,
            jitter_ratio=0.0,
        )

        assert policy.max_retries == 5
        assert policy.base_delay_ms == 100
        assert policy.backoff_factor == 1.5
        assert policy.jitter_ratio == 0.0

    def test_rejects_out_of_range(self) -> None:
        """Test validation bounds."""
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_factor=0.5)


class TestShouldRetry:
    """Tests for retry decision logic."""

    @pytest.fixture
    def policy(self) -> RetryPolicy:
        """Create a standard retry policy."""
        return RetryPolicy(max_retries=3)

    def test_retry_on_network_timeout(self, policy: RetryPolicy) -> None:
        """Test that network timeouts are retried until the budget is spent."""
        error = NetworkError(
            "Connection timed out",
            error_class=FetchErrorClass.NETWORK_TIMEOUT,
        )

        assert policy.should_retry(error, retry_count=0) is True
        assert policy.should_retry(error, retry_count=2) is True
        assert policy.should_retry(error, retry_count=3) is False

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retry_on_transient_status(
        self, policy: RetryPolicy, status: int
    ) -> None:
        """Test that transient statuses are retried."""
        assert policy.should_retry(HTTPError(status), retry_count=0) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422, 501])
    def test_no_retry_on_terminal_status(
        self, policy: RetryPolicy, status: int
    ) -> None:
        """Test that other error statuses are terminal."""
        assert policy.should_retry(HTTPError(status), retry_count=0) is False

    def test_no_retry_on_other_errors(self, policy: RetryPolicy) -> None:
        """Test that size, breaker and shutdown errors are terminal."""
        errors: list[FetchError] = [
            ResponseSizeExceededError("Response too large"),
            CircuitOpenError("https://example.com"),
            ClientDestroyedError(),
            FetchError("unknown"),
        ]
        for error in errors:
            assert policy.should_retry(error, retry_count=0) is False

    def test_zero_retries(self) -> None:
        """Test that a zero budget never retries."""
        policy = RetryPolicy(max_retries=0)
        assert policy.should_retry(NetworkError("reset"), retry_count=0) is False


class TestErrorClassification:
    """Tests for error classes attached to HTTP errors."""

    def test_rate_limited(self) -> None:
        assert HTTPError(429).error_class == FetchErrorClass.RATE_LIMITED

    def test_server_error(self) -> None:
        assert HTTPError(503).error_class == FetchErrorClass.HTTP_5XX

    def test_client_error(self) -> None:
        error = HTTPError(404, "https://example.com/missing")
        assert error.error_class == FetchErrorClass.HTTP_4XX
        assert error.status_code == 404
        assert error.url == "https://example.com/missing"


class TestBackoffDelay:
    """Tests for jittered exponential backoff."""

    def test_exponential_growth_without_jitter(self) -> None:
        """Test delay doubles per retry when jitter is zero."""
        delays = [
            compute_backoff_delay_ms(n, 1000, 2.0, 60000, rand=lambda: 0.0)
            for n in (1, 2, 3, 4)
        ]
        assert delays == [1000, 2000, 4000, 8000]

    def test_capped_at_max_delay(self) -> None:
        """Test delay never exceeds max_delay."""
        delay = compute_backoff_delay_ms(10, 1000, 2.0, 5000, rand=lambda: 0.99)
        assert delay == 5000

    def test_jitter_bounds(self) -> None:
        """Test jitter adds at most jitter_ratio of the base delay."""
        low = compute_backoff_delay_ms(1, 1000, 2.0, 60000, 0.25, rand=lambda: 0.0)
        high = compute_backoff_delay_ms(1, 1000, 2.0, 60000, 0.25, rand=lambda: 1.0)
        assert low == 1000
        assert high == 1250

    def test_policy_delay_uses_random_source(self) -> None:
        """Test RetryPolicy.get_delay_ms wires its settings through."""
        policy = RetryPolicy(base_delay_ms=100, backoff_factor=3.0, jitter_ratio=0.5)
        assert policy.get_delay_ms(2, rand=lambda: 0.5) == pytest.approx(375.0)


class TestRetryAfter:
    """Tests for Retry-After parsing and precedence."""

    def test_parse_seconds(self) -> None:
        assert parse_retry_after_ms("2") == 2000.0

    def test_parse_missing_or_garbage(self) -> None:
        assert parse_retry_after_ms(None) is None
        assert parse_retry_after_ms("") is None
        assert parse_retry_after_ms("soon") is None

    def test_parse_http_date(self) -> None:
        """Test HTTP-date form relative to a reference time."""
        now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=UTC)
        delay = parse_retry_after_ms("Mon, 01 Jan 2024 00:00:30 GMT", now=now)
        assert delay == pytest.approx(30000.0)

    def test_parse_http_date_in_past(self) -> None:
        now = datetime(2024, 1, 1, 0, 1, 0, tzinfo=UTC)
        assert parse_retry_after_ms("Mon, 01 Jan 2024 00:00:30 GMT", now=now) == 0.0

    def test_hint_wins_when_longer(self) -> None:
        assert apply_retry_after(500, 2000, 300_000) == 2000

    def test_backoff_wins_when_longer(self) -> None:
        assert apply_retry_after(5000, 2000, 300_000) == 5000

    def test_hint_is_capped(self) -> None:
        assert apply_retry_after(500, 900_000, 300_000) == 300_000

    def test_policy_honours_retry_after(self) -> None:
        """Test delay_for_error_ms picks up the hint from an HTTPError."""
        policy = RetryPolicy(base_delay_ms=10, jitter_ratio=0.0)
        error = HTTPError(429, retry_after_ms=2000)
        assert policy.delay_for_error_ms(error, 1) == 2000
        assert policy.delay_for_error_ms(NetworkError("reset"), 1) == 10
