"""Resilient HTTP fetch layer.

This module provides domain-aware HTTP fetching with:
- Per-origin FIFO queues with concurrency and pacing limits
- Retries with jittered exponential backoff and Retry-After support
- Per-origin circuit breakers with a single half-open probe
- Maximum response size enforcement
- Header redaction for security
- Metrics collection for observability
"""

from resilient_fetch.fetch.backoff import (
    apply_retry_after,
    compute_backoff_delay_ms,
    parse_retry_after_ms,
)
from resilient_fetch.fetch.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    CircuitStateError,
)
from resilient_fetch.fetch.client import ResilientHttpClient, monotonic_ms, origin_of
from resilient_fetch.fetch.config import (
    CircuitBreakerConfig,
    DomainProfile,
    FetchConfig,
)
from resilient_fetch.fetch.constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_MAX_RESPONSE_SIZE_BYTES,
    HTTP_STATUS_NOT_MODIFIED,
    MAX_RETRY_AFTER_MS,
    RETRYABLE_STATUS_CODES,
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
from resilient_fetch.fetch.metrics import DomainStats, FetchMetrics
from resilient_fetch.fetch.models import FetchResponse, RetryPolicy
from resilient_fetch.fetch.redact import redact_headers, redact_url_credentials


__all__ = [
    # Client
    "ResilientHttpClient",
    "origin_of",
    "monotonic_ms",
    # Config
    "FetchConfig",
    "DomainProfile",
    "CircuitBreakerConfig",
    "RetryPolicy",
    # Models
    "FetchResponse",
    # Errors
    "FetchError",
    "FetchErrorClass",
    "NetworkError",
    "HTTPError",
    "CircuitOpenError",
    "ClientDestroyedError",
    "ResponseSizeExceededError",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitStateError",
    # Backoff
    "compute_backoff_delay_ms",
    "parse_retry_after_ms",
    "apply_retry_after",
    # Constants
    "HTTP_STATUS_NOT_MODIFIED",
    "RETRYABLE_STATUS_CODES",
    "DEFAULT_MAX_RESPONSE_SIZE_BYTES",
    "DEFAULT_CHUNK_SIZE",
    "MAX_RETRY_AFTER_MS",
    # Metrics
    "DomainStats",
    "FetchMetrics",
    # Redaction
    "redact_headers",
    "redact_url_credentials",
]
