"""Resilient HTTP client with per-origin scheduling, retries and circuit breaking."""

import itertools
import json
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from io import BytesIO
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from resilient_fetch.fetch.backoff import parse_retry_after_ms
from resilient_fetch.fetch.circuit_breaker import CircuitState
from resilient_fetch.fetch.config import FetchConfig
from resilient_fetch.fetch.constants import DEFAULT_CHUNK_SIZE, HTTP_STATUS_BAD_REQUEST
from resilient_fetch.fetch.domain_queue import (
    DomainQueue,
    PendingRequest,
    new_domain_queue,
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
from resilient_fetch.fetch.models import FetchResponse
from resilient_fetch.fetch.redact import redact_headers, redact_url_credentials
from resilient_fetch.observability.events import EventBus, FetchEvent


logger = structlog.get_logger()


def origin_of(url: str) -> str:
    """Return the lower-cased scheme://host[:port] of an absolute URL.

    Raises:
        ValueError: If the URL has no scheme or host.
    """
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        msg = f"Not an absolute URL: {redact_url_credentials(url)!r}"
        raise ValueError(msg)
    netloc = parts.netloc.rsplit("@", 1)[-1]
    return f"{parts.scheme.lower()}://{netloc.lower()}"


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000.0


def _encode_json(payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


class ResilientHttpClient:
    """HTTP client that schedules requests per origin.

    Provides:
    - A FIFO queue per origin with concurrency and pacing limits
    - A global concurrency ceiling across origins
    - Jittered exponential backoff honouring Retry-After hints
    - A circuit breaker per origin with a single half-open probe
    - Maximum response size enforcement
    - Header redaction for logging
    - Metrics collection and lifecycle events

    A dispatcher thread wakes every `dispatch_interval_ms` (and whenever work
    is submitted or finishes) and hands eligible requests to a worker pool.
    All queue and breaker state is guarded by a single condition variable;
    completion handles are settled outside it.
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        metrics: FetchMetrics | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = monotonic_ms,
        rand: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the client and start its dispatcher.

        Args:
            config: Fetch configuration (defaults apply when omitted).
            event_bus: Bus receiving lifecycle events.
            metrics: Aggregate metrics sink.
            transport: Optional httpx transport, e.g. a MockTransport in tests.
            clock: Monotonic clock in milliseconds used for scheduling.
            rand: Source of uniform numbers in [0, 1) used for jitter.
        """
        self._config = config or FetchConfig()
        self._events = event_bus or EventBus()
        self._metrics = metrics or FetchMetrics()
        self._clock = clock
        self._rand = rand
        self._http = httpx.Client(
            transport=transport,
            follow_redirects=self._config.follow_redirects,
        )
        self._cond = threading.Condition()
        self._queues: dict[str, DomainQueue] = {}
        self._in_flight_total = 0
        self._closed = False
        self._ids = itertools.count(1)
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.global_concurrency,
            thread_name_prefix="fetch-worker",
        )
        self._log = logger.bind(component="fetch")
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            name="fetch-dispatcher",
            daemon=True,
        )
        self._dispatcher.start()
        self._log.info(
            "client_started",
            global_concurrency=self._config.global_concurrency,
            domain_concurrency=self._config.domain_concurrency,
            min_time_between_requests_ms=self._config.min_time_between_requests_ms,
        )

    @property
    def config(self) -> FetchConfig:
        """Configuration in effect."""
        return self._config

    @property
    def metrics(self) -> FetchMetrics:
        """Aggregate metrics for this client."""
        return self._metrics

    @property
    def events(self) -> EventBus:
        """Bus receiving this client's lifecycle events."""
        return self._events

    @property
    def closed(self) -> bool:
        """Whether shutdown() has been called."""
        return self._closed

    # ------------------------------------------------------------------
    # Public request API
    # ------------------------------------------------------------------

    def submit(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        content: bytes | str | None = None,
        json: Any = None,
        timeout_ms: int | None = None,
    ) -> "Future[FetchResponse]":
        """Queue a request and return its completion handle.

        Args:
            url: Absolute URL to request.
            method: HTTP method.
            headers: Per-request headers, merged over the configured defaults.
            content: Raw request body.
            json: JSON-serializable request body (sets Content-Type).
            timeout_ms: Per-request timeout overriding the configured one.

        Returns:
            A Future resolving to the FetchResponse, or failing with a
            FetchError subclass.

        Raises:
            ValueError: If the URL is not absolute.
        """
        origin = origin_of(url)
        host = urlsplit(url).hostname or ""

        merged_headers = self._config.get_headers_for_host(host)
        body = content.encode("utf-8") if isinstance(content, str) else content
        if json is not None:
            body = _encode_json(json)
            merged_headers["Content-Type"] = "application/json"
        if headers:
            merged_headers.update(headers)

        rejection: FetchError | None = None
        with self._cond:
            request = PendingRequest(
                id=f"req-{next(self._ids)}",
                url=url,
                origin=origin,
                method=method.upper(),
                headers=merged_headers,
                timeout_ms=timeout_ms or self._config.get_timeout_ms_for_host(host),
                enqueued_at_ms=self._clock(),
                content=body,
            )
            if self._closed:
                rejection = ClientDestroyedError(url)
            else:
                queue = self._get_or_create_queue(origin)
                if not queue.breaker.allows_request():
                    rejection = CircuitOpenError(
                        origin, url, queue.circuit_open_until_ms
                    )
                    self._metrics.record_circuit_rejection()
                else:
                    queue.enqueue(request)
                    queue_length = queue.queued_count
                    self._cond.notify_all()

        if rejection is not None:
            self._log.info(
                "request_rejected",
                url=redact_url_credentials(url),
                origin=origin,
                error_class=rejection.error_class.value,
            )
            request.reject(rejection)
            if isinstance(rejection, CircuitOpenError):
                self._events.emit(
                    FetchEvent.REQUEST_FAILED,
                    origin=origin,
                    request_id=request.id,
                    error_class=rejection.error_class.value,
                    error=rejection.message,
                )
            return request.future

        self._log.debug(
            "request_queued",
            request_id=request.id,
            url=redact_url_credentials(url),
            method=request.method,
            headers=redact_headers(merged_headers),
            queue_length=queue_length,
        )
        self._events.emit(
            FetchEvent.REQUEST_QUEUED,
            origin=origin,
            request_id=request.id,
            queue_length=queue_length,
        )
        return request.future

    def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        content: bytes | str | None = None,
        json: Any = None,
        timeout_ms: int | None = None,
    ) -> FetchResponse:
        """Perform a request and wait for its outcome.

        Returns:
            The successful FetchResponse.

        Raises:
            NetworkError: Retries exhausted on a connection-level failure.
            HTTPError: Terminal or exhausted error status.
            CircuitOpenError: The origin's breaker is open.
            ResponseSizeExceededError: Body exceeded the configured limit.
            ClientDestroyedError: The client was shut down first.
        """
        future = self.submit(
            url,
            method=method,
            headers=headers,
            content=content,
            json=json,
            timeout_ms=timeout_ms,
        )
        return future.result()

    def get(self, url: str, **kwargs: Any) -> FetchResponse:
        """GET a URL."""
        return self.request(url, method="GET", **kwargs)

    def post(self, url: str, **kwargs: Any) -> FetchResponse:
        """POST to a URL."""
        return self.request(url, method="POST", **kwargs)

    def put(self, url: str, **kwargs: Any) -> FetchResponse:
        """PUT to a URL."""
        return self.request(url, method="PUT", **kwargs)

    def patch(self, url: str, **kwargs: Any) -> FetchResponse:
        """PATCH a URL."""
        return self.request(url, method="PATCH", **kwargs)

    def delete(self, url: str, **kwargs: Any) -> FetchResponse:
        """DELETE a URL."""
        return self.request(url, method="DELETE", **kwargs)

    # ------------------------------------------------------------------
    # Stats and breaker control
    # ------------------------------------------------------------------

    def get_domain_stats(self, origin_or_url: str) -> DomainStats | None:
        """Get a snapshot of one origin's statistics.

        Args:
            origin_or_url: Origin or any absolute URL on it.

        Returns:
            DomainStats copy, or None if the origin was never requested.
        """
        origin = origin_of(origin_or_url)
        with self._cond:
            queue = self._queues.get(origin)
            if queue is None:
                return None
            return self._snapshot(queue)

    def get_all_stats(self) -> dict[str, DomainStats]:
        """Get snapshots of every known origin's statistics."""
        with self._cond:
            return {
                origin: self._snapshot(queue) for origin, queue in self._queues.items()
            }

    def reset_circuit_breaker(self, origin_or_url: str) -> None:
        """Force an origin's breaker closed and clear its failure count.

        Unknown origins are ignored.
        """
        origin = origin_of(origin_or_url)
        with self._cond:
            queue = self._queues.get(origin)
            if queue is None:
                return
            queue.breaker.reset()
            queue.stats.circuit_state = CircuitState.CLOSED
            self._cond.notify_all()

        self._log.info("circuit_reset", origin=origin)
        self._events.emit(FetchEvent.CIRCUIT_RESET, origin=origin)

    def _snapshot(self, queue: DomainQueue) -> DomainStats:
        stats = queue.stats.snapshot()
        stats.circuit_state = queue.breaker.state
        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = False) -> None:
        """Stop the client, failing all unsettled requests.

        Idempotent. Every queued, delayed and in-flight request is rejected
        with ClientDestroyedError.

        Args:
            wait: Whether to wait for running workers to return.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            abandoned = [
                request
                for queue in self._queues.values()
                for request in queue.drain_all()
            ]
            self._in_flight_total = 0
            self._cond.notify_all()

        for request in abandoned:
            request.reject(ClientDestroyedError(request.url))

        if threading.current_thread() is not self._dispatcher:
            self._dispatcher.join(timeout=5.0)
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._http.close()
        self._log.info("client_shutdown", abandoned_requests=len(abandoned))

    def __enter__(self) -> "ResilientHttpClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def _get_or_create_queue(self, origin: str) -> DomainQueue:
        queue = self._queues.get(origin)
        if queue is None:
            breaker_config = self._config.circuit_breaker
            queue = new_domain_queue(
                origin,
                failure_threshold=breaker_config.failure_threshold,
                cooldown_duration_ms=breaker_config.cooldown_duration_ms,
                clock=self._clock,
            )
            self._queues[origin] = queue
            self._log.debug("domain_queue_created", origin=origin)
        return queue

    def _dispatch_loop(self) -> None:
        interval_s = self._config.dispatch_interval_ms / 1000.0
        while True:
            with self._cond:
                if self._closed:
                    return
                rejected = self._dispatch_ready()

            for request, error in rejected:
                request.reject(error)
                self._events.emit(
                    FetchEvent.REQUEST_FAILED,
                    origin=request.origin,
                    request_id=request.id,
                    error_class=error.error_class.value,
                    error=error.message,
                )

            with self._cond:
                if self._closed:
                    return
                self._cond.wait(timeout=self._idle_timeout_s(interval_s))

    def _idle_timeout_s(self, interval_s: float) -> float:
        """Time to wait before the next tick, shortened for an upcoming retry.

        Must be called with the condition held.
        """
        now = self._clock()
        timeout_s = interval_s
        for queue in self._queues.values():
            ready_at_ms = queue.next_ready_at_ms()
            if ready_at_ms is not None and ready_at_ms > now:
                timeout_s = min(timeout_s, (ready_at_ms - now) / 1000.0)
        return timeout_s

    def _dispatch_ready(self) -> list[tuple[PendingRequest, FetchError]]:
        """Hand every eligible request to the worker pool.

        Must be called with the condition held.

        Returns:
            Requests failed by an open breaker, to be settled by the caller.
        """
        now = self._clock()
        rejected: list[tuple[PendingRequest, FetchError]] = []
        min_interval = self._config.min_time_between_requests_ms

        for queue in self._queues.values():
            queue.promote_ready_retry(now)
            if not queue.has_ready:
                continue

            state = queue.breaker.state
            queue.stats.circuit_state = state
            if state is CircuitState.OPEN:
                drained = queue.drain_waiting()
                for request in drained:
                    rejected.append(
                        (
                            request,
                            CircuitOpenError(
                                queue.origin, request.url, queue.circuit_open_until_ms
                            ),
                        )
                    )
                    self._metrics.record_circuit_rejection()
                self._log.info(
                    "circuit_open_queue_drained",
                    origin=queue.origin,
                    rejected=len(drained),
                )
                continue

            while queue.has_ready:
                if self._in_flight_total >= self._config.global_concurrency:
                    return rejected
                if queue.in_flight_count >= self._config.domain_concurrency:
                    break
                if not queue.paced(now, min_interval):
                    break

                is_probe = False
                if state is CircuitState.HALF_OPEN:
                    if queue.in_flight_count > 0 or not queue.breaker.try_acquire_probe():
                        break
                    is_probe = True

                request = queue.pop_next()
                if request is None:
                    break
                request.is_probe = is_probe
                queue.mark_dispatched(request, now)
                self._in_flight_total += 1
                self._executor.submit(self._execute, queue, request)
                self._log.debug(
                    "request_dispatched",
                    request_id=request.id,
                    origin=queue.origin,
                    retry_count=request.retry_count,
                    is_probe=is_probe,
                    wait_ms=round(now - request.enqueued_at_ms, 2),
                )
                if is_probe:
                    break

        return rejected

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _execute(self, queue: DomainQueue, request: PendingRequest) -> None:
        start_time_ns = time.perf_counter_ns()
        try:
            response = self._send(request)
        except FetchError as e:
            error: FetchError = e
        except Exception as e:  # noqa: BLE001
            error = FetchError(f"Unexpected error: {e}", request.url)
        else:
            elapsed_ms = (time.perf_counter_ns() - start_time_ns) / 1_000_000
            self._metrics.record_duration(elapsed_ms)
            self._on_success(queue, request, response, elapsed_ms)
            return

        elapsed_ms = (time.perf_counter_ns() - start_time_ns) / 1_000_000
        self._metrics.record_duration(elapsed_ms)
        self._on_failure(queue, request, error)

    def _send(self, request: PendingRequest) -> FetchResponse:
        """Perform one HTTP attempt.

        Returns:
            FetchResponse for any status below 400.

        Raises:
            HTTPError: For statuses of 400 and above.
            NetworkError: For timeouts and connection-level failures.
            ResponseSizeExceededError: If the body exceeds the size limit.
            FetchError: For any other transport failure.
        """
        start_time_ns = time.perf_counter_ns()
        timeout = request.timeout_ms / 1000.0
        try:
            with self._http.stream(
                request.method,
                request.url,
                headers=request.headers,
                content=request.content,
                timeout=timeout,
            ) as response:
                self._check_declared_size(response, request)
                body = self._read_body_with_limit(response, request)
                status_code = response.status_code
                response_headers = {
                    key.lower(): value for key, value in response.headers.items()
                }
                final_url = str(response.url)
                encoding = response.encoding or "utf-8"

        except httpx.TimeoutException as e:
            msg = f"Request timed out: {e}"
            raise NetworkError(
                msg, request.url, FetchErrorClass.NETWORK_TIMEOUT
            ) from e

        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            msg = f"Connection failed: {e}"
            raise NetworkError(msg, request.url) from e

        except httpx.HTTPError as e:
            msg = f"Request failed: {e}"
            raise FetchError(msg, request.url) from e

        self._metrics.record_request(status_code, len(body))
        elapsed_ms = (time.perf_counter_ns() - start_time_ns) / 1_000_000
        fetched = FetchResponse(
            status_code=status_code,
            url=request.url,
            final_url=final_url,
            headers=response_headers,
            body_bytes=body,
            elapsed_ms=elapsed_ms,
            attempts=request.retry_count + 1,
            encoding=encoding,
        )

        if status_code >= HTTP_STATUS_BAD_REQUEST:
            raise HTTPError(
                status_code,
                request.url,
                retry_after_ms=parse_retry_after_ms(response_headers.get("retry-after")),
                response=fetched,
            )
        return fetched

    def _check_declared_size(
        self, response: httpx.Response, request: PendingRequest
    ) -> None:
        content_length = response.headers.get("content-length")
        if not content_length or not content_length.isdigit():
            return
        size = int(content_length)
        limit = self._config.max_response_size_bytes
        if size > limit:
            msg = f"Response size {size} exceeds limit {limit}"
            raise ResponseSizeExceededError(msg, request.url)

    def _read_body_with_limit(
        self, response: httpx.Response, request: PendingRequest
    ) -> bytes:
        """Read response body with size limit.

        Args:
            response: Streaming HTTP response.
            request: The request being served.

        Returns:
            Response body bytes.

        Raises:
            ResponseSizeExceededError: If the size limit is exceeded.
        """
        buffer = BytesIO()
        total_read = 0
        max_size = self._config.max_response_size_bytes

        for chunk in response.iter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
            total_read += len(chunk)
            if total_read > max_size:
                msg = (
                    f"Response size exceeded limit of {max_size} bytes "
                    f"(read {total_read} bytes)"
                )
                raise ResponseSizeExceededError(msg, request.url)
            buffer.write(chunk)

        return buffer.getvalue()

    def _on_success(
        self,
        queue: DomainQueue,
        request: PendingRequest,
        response: FetchResponse,
        elapsed_ms: float,
    ) -> None:
        with self._cond:
            if queue.mark_finished(request):
                self._in_flight_total -= 1
            queue.stats.record_success(elapsed_ms)
            closed_now = queue.breaker.record_success(was_probe=request.is_probe)
            queue.stats.circuit_state = queue.breaker.state
            self._cond.notify_all()

        request.resolve(response)

        self._log.info(
            "fetch_complete",
            request_id=request.id,
            url=redact_url_credentials(request.url),
            status_code=response.status_code,
            bytes=response.body_size,
            duration_ms=round(elapsed_ms, 2),
            attempts=response.attempts,
        )
        if closed_now:
            self._log.info("circuit_closed", origin=queue.origin)
            self._events.emit(FetchEvent.CIRCUIT_CLOSED, origin=queue.origin)
        self._events.emit(
            FetchEvent.REQUEST_SUCCESS,
            origin=queue.origin,
            request_id=request.id,
            status_code=response.status_code,
            response_time_ms=round(elapsed_ms, 2),
            retry_count=request.retry_count,
        )

    def _on_failure(
        self,
        queue: DomainQueue,
        request: PendingRequest,
        error: FetchError,
    ) -> None:
        policy = self._config.retry_policy
        delay_ms: float | None = None
        opened_now = False

        with self._cond:
            if queue.mark_finished(request):
                self._in_flight_total -= 1
            queue.stats.record_failure(error.message)
            if self._closed:
                return

            # A half-open probe is never retried: its failure reopens the breaker
            if not request.is_probe and policy.should_retry(error, request.retry_count):
                request.retry_count += 1
                delay_ms = policy.delay_for_error_ms(
                    error, request.retry_count, self._rand
                )
                queue.schedule_retry(request, self._clock() + delay_ms)
                self._metrics.record_retry()
            else:
                opened_now = queue.breaker.record_failure(was_probe=request.is_probe)
            queue.stats.circuit_state = queue.breaker.state
            consecutive_failures = queue.consecutive_failures
            open_until_ms = queue.circuit_open_until_ms
            self._cond.notify_all()

        if delay_ms is not None:
            self._log.info(
                "retry_scheduled",
                request_id=request.id,
                url=redact_url_credentials(request.url),
                retry_count=request.retry_count,
                delay_ms=round(delay_ms, 2),
                error_class=error.error_class.value,
            )
            self._events.emit(
                FetchEvent.REQUEST_RETRY,
                origin=queue.origin,
                request_id=request.id,
                retry_count=request.retry_count,
                delay_ms=round(delay_ms, 2),
                error=error.message,
            )
            return

        self._metrics.record_failure(error.error_class)
        if opened_now:
            self._metrics.record_circuit_open()
        request.reject(error)

        self._log.warning(
            "request_failed",
            request_id=request.id,
            url=redact_url_credentials(request.url),
            error_class=error.error_class.value,
            error=error.message,
            retry_count=request.retry_count,
        )
        if opened_now:
            self._log.warning(
                "circuit_opened",
                origin=queue.origin,
                consecutive_failures=consecutive_failures,
                open_until_ms=open_until_ms,
            )
            self._events.emit(
                FetchEvent.CIRCUIT_OPENED,
                origin=queue.origin,
                consecutive_failures=consecutive_failures,
                open_until_ms=open_until_ms,
            )
        self._events.emit(
            FetchEvent.REQUEST_FAILED,
            origin=queue.origin,
            request_id=request.id,
            error_class=error.error_class.value,
            error=error.message,
        )
