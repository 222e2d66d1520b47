"""Unit tests for response size enforcement."""

from collections.abc import Generator

import httpx
import pytest

from resilient_fetch.fetch.client import ResilientHttpClient
from resilient_fetch.fetch.config import FetchConfig
from resilient_fetch.fetch.constants import DEFAULT_MAX_RESPONSE_SIZE_BYTES
from resilient_fetch.fetch.errors import FetchErrorClass, ResponseSizeExceededError
from resilient_fetch.fetch.models import RetryPolicy


class TestMaxResponseSizeConfig:
    """Tests for max response size configuration."""

    def test_default_max_size(self) -> None:
        """Test default max response size is 10 MB."""
        config = FetchConfig()

        assert config.max_response_size_bytes == 10 * 1024 * 1024
        assert config.max_response_size_bytes == DEFAULT_MAX_RESPONSE_SIZE_BYTES

    def test_min_max_size_validation(self) -> None:
        """Test that max size has minimum of 1KB."""
        assert FetchConfig(max_response_size_bytes=1024).max_response_size_bytes == 1024

        with pytest.raises(ValueError):
            FetchConfig(max_response_size_bytes=100)

    def test_max_max_size_validation(self) -> None:
        """Test that max size has maximum of 100 MB."""
        with pytest.raises(ValueError):
            FetchConfig(max_response_size_bytes=200 * 1024 * 1024)


class TestResponseSizeEnforcement:
    """Tests for the size limit applied while reading bodies."""

    @pytest.fixture
    def config(self) -> FetchConfig:
        return FetchConfig(
            max_response_size_bytes=1024,
            min_time_between_requests_ms=0,
            dispatch_interval_ms=5,
            retry_policy=RetryPolicy(max_retries=3, base_delay_ms=1),
        )

    def test_declared_length_over_limit(self, config: FetchConfig) -> None:
        """Test Content-Length above the limit fails without retrying."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=b"x" * 2048)

        with ResilientHttpClient(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            with pytest.raises(ResponseSizeExceededError) as exc_info:
                client.get("https://big.example.com/file")

        assert exc_info.value.error_class == FetchErrorClass.RESPONSE_SIZE_EXCEEDED
        assert "2048" in exc_info.value.message
        assert len(calls) == 1

    def test_streamed_body_over_limit(self, config: FetchConfig) -> None:
        """Test a body without Content-Length is cut off while streaming."""

        def chunks() -> Generator[bytes]:
            for _ in range(4):
                yield b"y" * 512

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=chunks())

        with ResilientHttpClient(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            with pytest.raises(ResponseSizeExceededError):
                client.get("https://big.example.com/stream")

    def test_body_within_limit(self, config: FetchConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"z" * 1000)

        with ResilientHttpClient(
            config, transport=httpx.MockTransport(handler)
        ) as client:
            response = client.get("https://small.example.com/file")

        assert response.body_size == 1000
        assert response.status_code == 200
