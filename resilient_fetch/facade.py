"""Fetch-with-cache façade: the single entry point for cached fetching."""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

import structlog

from resilient_fetch.cache.models import CacheEntry, FetchedValue
from resilient_fetch.cache.service import MultiTierCache
from resilient_fetch.fetch.client import ResilientHttpClient
from resilient_fetch.fetch.constants import HTTP_STATUS_NOT_MODIFIED
from resilient_fetch.fetch.models import FetchResponse
from resilient_fetch.fetch.redact import redact_url_credentials


logger = structlog.get_logger()

# Response headers kept in cache metadata
KEPT_RESPONSE_HEADERS = frozenset(
    {
        "cache-control",
        "content-type",
        "content-language",
        "etag",
        "expires",
        "last-modified",
    }
)


def decode_text(response: FetchResponse) -> str:
    """Default decoder: the response body as text."""
    return response.text


def _kept_headers(response: FetchResponse) -> dict[str, str]:
    return {
        key: value
        for key, value in response.headers.items()
        if key in KEPT_RESPONSE_HEADERS
    }


class CachedFetcher:
    """Fetch URLs through the multi-tier cache.

    Fresh hits never touch the network. Stale but servable hits are returned
    immediately while a background refresh, deduplicated per key, revalidates
    them with conditional headers. Misses go through the resilient client
    and are written back to the cache.
    """

    def __init__(
        self,
        client: ResilientHttpClient,
        cache: MultiTierCache,
        *,
        default_ttl_ms: float | None = None,
        decode: Callable[[FetchResponse], Any] | None = None,
        max_background_workers: int = 4,
    ) -> None:
        """Initialize the façade.

        Args:
            client: Client used for network fetches.
            cache: Cache consulted before the network.
            default_ttl_ms: TTL for new entries (default: the cache's TTL).
            decode: Maps a response to the cached value (default: body text).
            max_background_workers: Size of the background refresh pool.
        """
        self._client = client
        self._cache = cache
        self._default_ttl_ms = default_ttl_ms
        self._decode = decode or decode_text
        self._executor = ThreadPoolExecutor(
            max_workers=max_background_workers,
            thread_name_prefix="cache-refresh",
        )
        self._lock = threading.Lock()
        self._background: set[Future[None]] = set()
        self._closed = False
        self._log = logger.bind(component="facade")

    def fetch(
        self,
        url: str,
        *,
        ttl_ms: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Fetch a URL, preferring cached values.

        Args:
            url: Absolute URL to fetch.
            ttl_ms: TTL for a newly cached value.
            headers: Extra request headers.

        Returns:
            The decoded value, possibly stale.

        Raises:
            FetchError: On a miss whose network fetch failed.
        """
        entry = self._cache.get(url)
        if entry is not None:
            if entry.metadata.stale:
                self._schedule_refresh(url, entry, headers)
            return entry.value

        response = self._client.request(url, headers=headers)
        value = self._decode(response)
        self._cache.set(
            url,
            value,
            ttl_ms=ttl_ms if ttl_ms is not None else self._default_ttl_ms,
            origin_url=url,
            etag=response.etag,
            last_modified=response.last_modified,
            http_status=response.status_code,
            attempt_count=response.attempts,
            headers=_kept_headers(response),
        )
        self._log.debug(
            "fetched_and_cached",
            url=redact_url_credentials(url),
            status_code=response.status_code,
            attempts=response.attempts,
        )
        return value

    def _schedule_refresh(
        self,
        url: str,
        stale_entry: CacheEntry,
        headers: dict[str, str] | None,
    ) -> None:
        if self._cache.is_revalidating(url):
            return
        with self._lock:
            if self._closed:
                return
            future = self._executor.submit(self._refresh, url, stale_entry, headers)
            self._background.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: "Future[None]") -> None:
        with self._lock:
            self._background.discard(future)

    def _refresh(
        self,
        url: str,
        stale_entry: CacheEntry,
        headers: dict[str, str] | None,
    ) -> None:
        def fetcher() -> FetchedValue:
            return self._conditional_fetch(url, stale_entry, headers)

        try:
            self._cache.revalidate(url, fetcher)
        except Exception as e:  # noqa: BLE001
            self._log.warning(
                "background_refresh_failed",
                url=redact_url_credentials(url),
                error=str(e),
            )

    def _conditional_fetch(
        self,
        url: str,
        stale_entry: CacheEntry,
        headers: dict[str, str] | None,
    ) -> FetchedValue:
        """Revalidate a stale entry with If-None-Match / If-Modified-Since.

        A 304 keeps the cached value and only renews its freshness.
        """
        metadata = stale_entry.metadata
        request_headers = dict(headers or {})
        if metadata.etag:
            request_headers["If-None-Match"] = metadata.etag
        if metadata.last_modified:
            request_headers["If-Modified-Since"] = metadata.last_modified

        response = self._client.request(url, headers=request_headers)

        if response.status_code == HTTP_STATUS_NOT_MODIFIED:
            self._log.info("not_modified", url=redact_url_credentials(url))
            return FetchedValue(
                value=stale_entry.value,
                http_status=metadata.http_status,
                etag=response.etag or metadata.etag,
                last_modified=response.last_modified or metadata.last_modified,
                headers=metadata.headers,
                attempt_count=response.attempts,
            )

        return FetchedValue(
            value=self._decode(response),
            http_status=response.status_code,
            etag=response.etag,
            last_modified=response.last_modified,
            headers=_kept_headers(response),
            attempt_count=response.attempts,
        )

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """Wait for scheduled background refreshes to finish.

        Returns:
            True if none is left running.
        """
        with self._lock:
            pending = list(self._background)
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_refreshes: bool = False) -> None:
        """Stop the background refresh pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait_for_refreshes, cancel_futures=True)
        self._log.info("facade_shutdown")
