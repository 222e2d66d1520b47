"""Typed errors raised by the resilient fetch client.

Every failure a caller can observe from `ResilientHttpClient.request` is a
subclass of `FetchError`. Each error carries a `FetchErrorClass` used for
retry decisions and metrics.
"""

from enum import Enum
from typing import TYPE_CHECKING

from resilient_fetch.fetch.constants import (
    HTTP_STATUS_SERVER_ERROR_MIN,
    HTTP_STATUS_TOO_MANY_REQUESTS,
    RETRYABLE_STATUS_CODES,
)


if TYPE_CHECKING:
    from resilient_fetch.fetch.models import FetchResponse


class FetchErrorClass(str, Enum):
    """Classification of fetch errors for metrics and retry decisions.

    - NETWORK_TIMEOUT: Request timed out
    - CONNECTION_ERROR: Could not establish or keep a connection (DNS, refused, reset)
    - RESPONSE_SIZE_EXCEEDED: Response exceeded max size limit
    - HTTP_4XX: 4xx client error
    - HTTP_5XX: 5xx server error
    - RATE_LIMITED: 429 Too Many Requests
    - CIRCUIT_OPEN: Rejected by an open circuit breaker
    - CLIENT_DESTROYED: Client shut down before the request settled
    - UNKNOWN: Unclassified error
    """

    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    RESPONSE_SIZE_EXCEEDED = "RESPONSE_SIZE_EXCEEDED"
    HTTP_4XX = "HTTP_4XX"
    HTTP_5XX = "HTTP_5XX"
    RATE_LIMITED = "RATE_LIMITED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    CLIENT_DESTROYED = "CLIENT_DESTROYED"
    UNKNOWN = "UNKNOWN"


class FetchError(Exception):
    """Base exception for all fetch failures."""

    error_class: FetchErrorClass = FetchErrorClass.UNKNOWN

    def __init__(self, message: str, url: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            url: URL of the failed request, if known.
        """
        self.message = message
        self.url = url
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether another attempt could succeed."""
        return False


class NetworkError(FetchError):
    """Connection-level failure: timeout, DNS, refused, or reset."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        error_class: FetchErrorClass = FetchErrorClass.CONNECTION_ERROR,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            url: URL of the failed request.
            error_class: NETWORK_TIMEOUT or CONNECTION_ERROR.
        """
        super().__init__(message, url)
        self.error_class = error_class

    @property
    def retryable(self) -> bool:
        """Connection-level failures are always retryable."""
        return True


class HTTPError(FetchError):
    """The server answered with an error status (>= 400)."""

    def __init__(
        self,
        status_code: int,
        url: str | None = None,
        retry_after_ms: float | None = None,
        response: "FetchResponse | None" = None,
    ) -> None:
        """Initialize the error.

        Args:
            status_code: HTTP status code of the response.
            url: URL of the failed request.
            retry_after_ms: Parsed Retry-After hint in milliseconds.
            response: The error response, body included.
        """
        super().__init__(f"HTTP error {status_code}", url)
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.response = response
        if status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
            self.error_class = FetchErrorClass.RATE_LIMITED
        elif status_code >= HTTP_STATUS_SERVER_ERROR_MIN:
            self.error_class = FetchErrorClass.HTTP_5XX
        else:
            self.error_class = FetchErrorClass.HTTP_4XX

    @property
    def retryable(self) -> bool:
        """Only 408, 429 and transient 5xx statuses are retried."""
        return self.status_code in RETRYABLE_STATUS_CODES


class ResponseSizeExceededError(FetchError):
    """Raised when response size exceeds the configured limit."""

    error_class = FetchErrorClass.RESPONSE_SIZE_EXCEEDED


class CircuitOpenError(FetchError):
    """The origin's circuit breaker is open; no network attempt was made."""

    error_class = FetchErrorClass.CIRCUIT_OPEN

    def __init__(
        self,
        origin: str,
        url: str | None = None,
        open_until_ms: float | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            origin: Origin whose breaker rejected the request.
            url: URL of the rejected request.
            open_until_ms: Monotonic time at which the cooldown ends.
        """
        super().__init__(
            f"Circuit breaker open for {origin}: too many consecutive failures",
            url,
        )
        self.origin = origin
        self.open_until_ms = open_until_ms


class ClientDestroyedError(FetchError):
    """The client was shut down before the request could complete."""

    error_class = FetchErrorClass.CLIENT_DESTROYED

    def __init__(self, url: str | None = None) -> None:
        """Initialize the error.

        Args:
            url: URL of the abandoned request.
        """
        super().__init__("Client destroyed", url)
