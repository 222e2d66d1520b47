"""Resilient, cache-backed HTTP fetching.

Combines a per-origin scheduling HTTP client (retries, pacing, circuit
breaking) with a multi-tier stale-while-revalidate cache.
"""

from resilient_fetch.cache import CacheConfig, MultiTierCache, SqliteCacheStore
from resilient_fetch.facade import CachedFetcher
from resilient_fetch.fetch import (
    CircuitOpenError,
    ClientDestroyedError,
    FetchConfig,
    FetchError,
    FetchResponse,
    HTTPError,
    NetworkError,
    ResilientHttpClient,
    ResponseSizeExceededError,
    RetryPolicy,
)
from resilient_fetch.layer import FetchLayer, LayerConfig
from resilient_fetch.observability import EventBus, FetchEvent


__version__ = "0.1.0"

__all__ = [
    # Layer
    "FetchLayer",
    "LayerConfig",
    "CachedFetcher",
    # Client
    "ResilientHttpClient",
    "FetchConfig",
    "RetryPolicy",
    "FetchResponse",
    # Cache
    "MultiTierCache",
    "CacheConfig",
    "SqliteCacheStore",
    # Errors
    "FetchError",
    "NetworkError",
    "HTTPError",
    "CircuitOpenError",
    "ClientDestroyedError",
    "ResponseSizeExceededError",
    # Events
    "EventBus",
    "FetchEvent",
]
