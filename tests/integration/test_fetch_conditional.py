"""Integration tests for cached fetching with ETag/Last-Modified revalidation."""

import json
import threading
from collections.abc import Generator
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import httpx
import pytest

from resilient_fetch.cache.config import CacheConfig
from resilient_fetch.cache.service import MultiTierCache
from resilient_fetch.facade import CachedFetcher
from resilient_fetch.fetch.client import ResilientHttpClient
from resilient_fetch.fetch.config import FetchConfig
from resilient_fetch.fetch.errors import HTTPError
from resilient_fetch.fetch.models import FetchResponse, RetryPolicy
from tests.helpers.time import FakeClock


START_MS = 1_700_000_000_000.0
TTL_MS = 100
STALE_WINDOW_MS = 1000
URL = "https://feeds.example.com/latest.json"


def get_server_url(server: HTTPServer, path: str = "/resource") -> str:
    """Get the URL for a test server.

    Args:
        server: The HTTP server instance.
        path: The URL path.

    Returns:
        Complete URL for the server.
    """
    host, port = server.server_address[0], server.server_address[1]
    if isinstance(host, bytes):
        host = host.decode("utf-8")
    return f"http://{host}:{port}{path}"


class CachingHTTPHandler(BaseHTTPRequestHandler):
    """HTTP handler that supports ETag and Last-Modified caching."""

    response_body: bytes = b'{"data": "test content for caching"}'
    etag: str = '"abc123"'
    last_modified: str = "Mon, 01 Jan 2024 00:00:00 GMT"
    full_responses: int = 0
    not_modified_responses: int = 0

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Handle GET requests with conditional caching support."""
        if_none_match = self.headers.get("If-None-Match")
        if_modified_since = self.headers.get("If-Modified-Since")

        if if_none_match == self.etag or if_modified_since == self.last_modified:
            type(self).not_modified_responses += 1
            self.send_response(304)
            self.send_header("ETag", self.etag)
            self.send_header("Last-Modified", self.last_modified)
            self.end_headers()
            return

        type(self).full_responses += 1
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(self.response_body)))
        self.send_header("ETag", self.etag)
        self.send_header("Last-Modified", self.last_modified)
        self.end_headers()
        self.wfile.write(self.response_body)


def fast_fetch_config() -> FetchConfig:
    return FetchConfig(
        min_time_between_requests_ms=0,
        dispatch_interval_ms=5,
        retry_policy=RetryPolicy(
            max_retries=2, base_delay_ms=1, max_delay_ms=5, jitter_ratio=0.0
        ),
    )


def memory_cache(clock: FakeClock) -> MultiTierCache:
    return MultiTierCache(
        CacheConfig(
            default_ttl_ms=TTL_MS,
            stale_if_error_window_ms=STALE_WINDOW_MS,
            persist_to_durable_store=False,
        ),
        clock=clock,
        start_cleanup=False,
    )


class ScriptedOrigin:
    """MockTransport handler serving a scripted sequence of responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            index = min(len(self.requests), len(self._responses)) - 1
        template = self._responses[index]
        return httpx.Response(
            template.status_code,
            headers=template.headers,
            content=template.content,
        )

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start_ms=START_MS)


@pytest.fixture
def cache(clock: FakeClock) -> Generator[MultiTierCache]:
    cache = memory_cache(clock)
    yield cache
    cache.shutdown()


def make_fetcher(
    handler: Any,
    cache: MultiTierCache,
    **kwargs: Any,
) -> tuple[ResilientHttpClient, CachedFetcher]:
    client = ResilientHttpClient(
        fast_fetch_config(), transport=httpx.MockTransport(handler)
    )
    return client, CachedFetcher(client, cache, **kwargs)


class TestCachedFetch:
    """Tests for the fetch-with-cache path against a mock origin."""

    def test_miss_fetches_and_caches(self, cache: MultiTierCache) -> None:
        """Test the first fetch goes to the network and the second does not."""
        origin = ScriptedOrigin(
            httpx.Response(200, text="v1", headers={"ETag": '"v1"'})
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            assert fetcher.fetch(URL) == "v1"
            assert fetcher.fetch(URL) == "v1"
        finally:
            fetcher.shutdown()
            client.shutdown()

        assert origin.calls == 1
        entry = cache.get(URL)
        assert entry is not None
        assert entry.metadata.etag == '"v1"'
        assert entry.metadata.http_status == 200
        assert entry.metadata.ttl_ms == TTL_MS

    def test_stale_value_served_and_revalidated(
        self, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        """Test a stale hit returns at once and refreshes with validators."""
        origin = ScriptedOrigin(
            httpx.Response(
                200,
                text="v1",
                headers={
                    "ETag": '"v1"',
                    "Last-Modified": "Mon, 01 Jan 2024 00:00:00 GMT",
                },
            ),
            httpx.Response(304, headers={"ETag": '"v1"'}),
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            fetcher.fetch(URL)
            clock.advance(TTL_MS + 50)

            assert fetcher.fetch(URL) == "v1"
            assert fetcher.wait_for_background(timeout=5.0)
        finally:
            fetcher.shutdown()
            client.shutdown()

        assert origin.calls == 2
        conditional = origin.requests[1]
        assert conditional.headers["If-None-Match"] == '"v1"'
        assert (
            conditional.headers["If-Modified-Since"]
            == "Mon, 01 Jan 2024 00:00:00 GMT"
        )

        entry = cache.get(URL)
        assert entry is not None
        assert entry.value == "v1"
        assert entry.metadata.stale is False
        assert entry.metadata.fetched_at_ms == START_MS + TTL_MS + 50
        assert entry.metadata.http_status == 200

    def test_refresh_replaces_changed_value(
        self, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        origin = ScriptedOrigin(
            httpx.Response(200, text="v1", headers={"ETag": '"v1"'}),
            httpx.Response(200, text="v2", headers={"ETag": '"v2"'}),
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            fetcher.fetch(URL)
            clock.advance(TTL_MS + 1)
            assert fetcher.fetch(URL) == "v1"
            assert fetcher.wait_for_background(timeout=5.0)
            assert fetcher.fetch(URL) == "v2"
        finally:
            fetcher.shutdown()
            client.shutdown()

        entry = cache.get(URL)
        assert entry is not None
        assert entry.metadata.etag == '"v2"'
        assert origin.calls == 2

    def test_refresh_failure_keeps_stale_value(
        self, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        """Test a failed background refresh leaves the stale value servable."""
        origin = ScriptedOrigin(
            httpx.Response(200, text="v1"),
            httpx.Response(503, text="down"),
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            fetcher.fetch(URL)
            clock.advance(TTL_MS + 1)
            assert fetcher.fetch(URL) == "v1"
            assert fetcher.wait_for_background(timeout=5.0)
            assert fetcher.fetch(URL) == "v1"
            assert fetcher.wait_for_background(timeout=5.0)
        finally:
            fetcher.shutdown()
            client.shutdown()

        entry = cache.get(URL)
        assert entry is not None
        assert entry.value == "v1"
        assert entry.metadata.stale is True

    def test_miss_error_raises_and_caches_nothing(
        self, cache: MultiTierCache
    ) -> None:
        origin = ScriptedOrigin(httpx.Response(404, text="missing"))
        client, fetcher = make_fetcher(origin, cache)
        try:
            with pytest.raises(HTTPError) as exc_info:
                fetcher.fetch(URL)
        finally:
            fetcher.shutdown()
            client.shutdown()

        assert exc_info.value.status_code == 404
        assert cache.has(URL) is False

    def test_beyond_stale_window_fetches_again(
        self, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        """Test an entry past its stale window is treated as a miss."""
        origin = ScriptedOrigin(
            httpx.Response(200, text="v1"),
            httpx.Response(200, text="v2"),
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            fetcher.fetch(URL)
            clock.advance(TTL_MS + STALE_WINDOW_MS + 10)
            assert fetcher.fetch(URL) == "v2"
        finally:
            fetcher.shutdown()
            client.shutdown()

        assert origin.calls == 2

    def test_custom_decode_and_ttl(
        self, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        """Test a decoder shapes the cached value and ttl_ms overrides TTL."""
        origin = ScriptedOrigin(
            httpx.Response(200, json={"items": [1, 2, 3]}),
        )

        def decode(response: FetchResponse) -> Any:
            return response.json_body()["items"]

        client, fetcher = make_fetcher(origin, cache, decode=decode)
        try:
            assert fetcher.fetch(URL, ttl_ms=5000) == [1, 2, 3]
            clock.advance(1000)
            assert fetcher.fetch(URL) == [1, 2, 3]
        finally:
            fetcher.shutdown()
            client.shutdown()

        entry = cache.get(URL)
        assert entry is not None
        assert entry.metadata.ttl_ms == 5000
        assert entry.metadata.stale is False
        assert origin.calls == 1

    def test_kept_response_headers(self, cache: MultiTierCache) -> None:
        origin = ScriptedOrigin(
            httpx.Response(
                200,
                text="v1",
                headers={"Content-Type": "text/plain", "X-Request-Id": "abc"},
            )
        )
        client, fetcher = make_fetcher(origin, cache)
        try:
            fetcher.fetch(URL)
        finally:
            fetcher.shutdown()
            client.shutdown()

        entry = cache.get(URL)
        assert entry is not None
        assert entry.metadata.headers is not None
        assert entry.metadata.headers["content-type"].startswith("text/plain")
        assert "x-request-id" not in entry.metadata.headers


class TestConditionalRequestsAgainstServer:
    """Tests against a local HTTP server honouring validators."""

    @pytest.fixture
    def caching_server(self) -> Generator[HTTPServer]:
        """Start a test server with caching support."""
        CachingHTTPHandler.full_responses = 0
        CachingHTTPHandler.not_modified_responses = 0
        server = HTTPServer(("127.0.0.1", 0), CachingHTTPHandler)
        thread = threading.Thread(target=server.serve_forever)
        thread.daemon = True
        thread.start()
        yield server
        server.shutdown()
        server.server_close()

    def test_not_modified_renews_cached_value(
        self, caching_server: HTTPServer, cache: MultiTierCache, clock: FakeClock
    ) -> None:
        """Test a 304 from the origin keeps the body and renews freshness."""
        url = get_server_url(caching_server)
        client = ResilientHttpClient(fast_fetch_config())
        fetcher = CachedFetcher(
            client, cache, decode=lambda response: response.json_body()
        )
        try:
            first = fetcher.fetch(url)
            clock.advance(TTL_MS + 1)
            second = fetcher.fetch(url)
            assert fetcher.wait_for_background(timeout=5.0)
        finally:
            fetcher.shutdown()
            client.shutdown()

        assert first == json.loads(CachingHTTPHandler.response_body)
        assert second == first
        assert CachingHTTPHandler.full_responses == 1
        assert CachingHTTPHandler.not_modified_responses == 1

        entry = cache.get(url)
        assert entry is not None
        assert entry.value == first
        assert entry.metadata.stale is False
        assert entry.metadata.etag == CachingHTTPHandler.etag
