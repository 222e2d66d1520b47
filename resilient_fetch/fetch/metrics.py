"""Metrics collection for the resilient fetch client."""

from dataclasses import dataclass, field, replace
from threading import Lock

from resilient_fetch.fetch.circuit_breaker import CircuitState
from resilient_fetch.fetch.errors import FetchErrorClass


@dataclass
class DomainStats:
    """Per-origin request statistics.

    Counters are per attempt: a request retried twice contributes three
    attempts. The average response time covers successful attempts only.

    Attributes:
        total_requests: Attempts made against the origin.
        successes: Attempts that returned a non-error response.
        failures: Attempts that failed (network or HTTP error).
        avg_response_time_ms: Running mean latency of successful attempts.
        last_error_message: Message of the most recent failure.
        circuit_state: Current state of the origin's circuit breaker.
    """

    total_requests: int = 0
    successes: int = 0
    failures: int = 0
    avg_response_time_ms: float = 0.0
    last_error_message: str | None = None
    circuit_state: CircuitState = CircuitState.CLOSED

    def record_success(self, response_time_ms: float) -> None:
        """Record a successful attempt and fold its latency into the mean."""
        self.total_requests += 1
        self.successes += 1
        self.avg_response_time_ms += (
            response_time_ms - self.avg_response_time_ms
        ) / self.successes

    def record_failure(self, message: str) -> None:
        """Record a failed attempt."""
        self.total_requests += 1
        self.failures += 1
        self.last_error_message = message

    def snapshot(self) -> "DomainStats":
        """Return an independent copy."""
        return replace(self)

    def to_dict(self) -> dict[str, int | float | str | None]:
        """Convert stats to dictionary."""
        return {
            "total_requests": self.total_requests,
            "successes": self.successes,
            "failures": self.failures,
            "avg_response_time_ms": round(self.avg_response_time_ms, 2),
            "last_error_message": self.last_error_message,
            "circuit_state": self.circuit_state.value,
        }


@dataclass
class FetchMetrics:
    """Aggregate metrics for a client instance.

    Thread-safe; workers record into it concurrently.
    """

    http_requests_total: dict[int, int] = field(default_factory=dict)
    http_retry_total: int = 0
    http_failures_total: dict[str, int] = field(default_factory=dict)
    http_bytes_total: int = 0
    http_duration_ms_total: float = 0.0
    http_request_count: int = 0
    circuit_open_total: int = 0
    circuit_rejections_total: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_request(self, status_code: int, bytes_received: int) -> None:
        """Record a completed HTTP exchange.

        Args:
            status_code: HTTP status code.
            bytes_received: Number of bytes received.
        """
        with self._lock:
            self.http_requests_total[status_code] = (
                self.http_requests_total.get(status_code, 0) + 1
            )
            self.http_bytes_total += bytes_received
            self.http_request_count += 1

    def record_retry(self) -> None:
        """Record a scheduled retry."""
        with self._lock:
            self.http_retry_total += 1

    def record_failure(self, error_class: FetchErrorClass) -> None:
        """Record a final request failure.

        Args:
            error_class: Classification of the failure.
        """
        with self._lock:
            key = error_class.value
            self.http_failures_total[key] = self.http_failures_total.get(key, 0) + 1

    def record_duration(self, duration_ms: float) -> None:
        """Record attempt duration."""
        with self._lock:
            self.http_duration_ms_total += duration_ms

    def record_circuit_open(self) -> None:
        """Record a breaker transition to open."""
        with self._lock:
            self.circuit_open_total += 1

    def record_circuit_rejection(self) -> None:
        """Record a request rejected by an open breaker."""
        with self._lock:
            self.circuit_rejections_total += 1

    def to_dict(self) -> dict[str, int | float | dict[str, int] | dict[int, int]]:
        """Convert metrics to dictionary."""
        with self._lock:
            return {
                "http_requests_total": dict(self.http_requests_total),
                "http_retry_total": self.http_retry_total,
                "http_failures_total": dict(self.http_failures_total),
                "http_bytes_total": self.http_bytes_total,
                "http_duration_ms_total": self.http_duration_ms_total,
                "http_duration_ms_avg": (
                    self.http_duration_ms_total / self.http_request_count
                    if self.http_request_count
                    else 0.0
                ),
                "http_request_count": self.http_request_count,
                "circuit_open_total": self.circuit_open_total,
                "circuit_rejections_total": self.circuit_rejections_total,
            }

    @property
    def avg_duration_ms(self) -> float:
        """Average attempt duration in milliseconds."""
        with self._lock:
            if self.http_request_count == 0:
                return 0.0
            return self.http_duration_ms_total / self.http_request_count
