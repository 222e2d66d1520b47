"""Per-origin request queue with pacing, retry slot, and circuit breaker."""

from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field

from resilient_fetch.fetch.circuit_breaker import CircuitBreaker
from resilient_fetch.fetch.models import FetchResponse
from resilient_fetch.fetch.metrics import DomainStats


@dataclass
class PendingRequest:
    """A request waiting for, or undergoing, execution.

    The `future` is the completion handle handed to the caller. It is
    settled exactly once: later resolve/reject calls are ignored.
    """

    id: str
    url: str
    origin: str
    method: str
    headers: dict[str, str]
    timeout_ms: int
    enqueued_at_ms: float
    content: bytes | None = None
    retry_count: int = 0
    ready_at_ms: float = 0.0
    is_probe: bool = False
    future: "Future[FetchResponse]" = field(default_factory=Future, repr=False)

    def resolve(self, response: FetchResponse) -> bool:
        """Fulfil the completion handle. Returns False if it was already settled."""
        try:
            self.future.set_result(response)
        except InvalidStateError:
            return False
        return True

    def reject(self, error: BaseException) -> bool:
        """Fail the completion handle. Returns False if it was already settled."""
        try:
            self.future.set_exception(error)
        except InvalidStateError:
            return False
        return True


class DomainQueue:
    """FIFO queue and scheduling state for one origin.

    Retries wait in a delayed list until their backoff elapses; a ready
    retry then moves into a single privileged slot that is served before
    the FIFO, so at most one retry jumps the line at a time.
    """

    def __init__(self, origin: str, breaker: CircuitBreaker) -> None:
        """Initialize an empty queue.

        Args:
            origin: Origin (scheme://host[:port]) served by this queue.
            breaker: Circuit breaker guarding the origin.
        """
        self.origin = origin
        self.breaker = breaker
        self.pending: deque[PendingRequest] = deque()
        self.retry_slot: PendingRequest | None = None
        self.delayed: list[PendingRequest] = []
        self.in_flight: dict[str, PendingRequest] = {}
        self.last_dispatch_at_ms: float | None = None
        self.stats = DomainStats()

    @property
    def in_flight_count(self) -> int:
        """Requests of this origin currently executing."""
        return len(self.in_flight)

    @property
    def consecutive_failures(self) -> int:
        """Final failures since the last success, as tracked by the breaker."""
        return self.breaker.consecutive_failures

    @property
    def circuit_open_until_ms(self) -> float | None:
        """End of the breaker cooldown, or None while closed."""
        return self.breaker.open_until_ms

    @property
    def has_ready(self) -> bool:
        """Whether a request is ready to dispatch."""
        return self.retry_slot is not None or bool(self.pending)

    @property
    def queued_count(self) -> int:
        """Requests waiting in any holding area."""
        slot = 1 if self.retry_slot is not None else 0
        return len(self.pending) + len(self.delayed) + slot

    def enqueue(self, request: PendingRequest) -> None:
        """Append a new request at the back of the FIFO."""
        self.pending.append(request)

    def schedule_retry(self, request: PendingRequest, ready_at_ms: float) -> None:
        """Park a failed request until its backoff delay has elapsed."""
        request.ready_at_ms = ready_at_ms
        self.delayed.append(request)

    def promote_ready_retry(self, now_ms: float) -> None:
        """Move the earliest ready retry into the privileged slot, if it is free."""
        if self.retry_slot is not None or not self.delayed:
            return
        ready = [r for r in self.delayed if r.ready_at_ms <= now_ms]
        if not ready:
            return
        earliest = min(ready, key=lambda r: r.ready_at_ms)
        self.delayed.remove(earliest)
        self.retry_slot = earliest

    def next_ready_at_ms(self) -> float | None:
        """Earliest time at which a delayed retry becomes ready."""
        if not self.delayed:
            return None
        return min(r.ready_at_ms for r in self.delayed)

    def paced(self, now_ms: float, min_interval_ms: float) -> bool:
        """Whether the minimum spacing since the last dispatch has elapsed."""
        if self.last_dispatch_at_ms is None:
            return True
        return now_ms - self.last_dispatch_at_ms >= min_interval_ms

    def pop_next(self) -> PendingRequest | None:
        """Take the next request: the retry slot first, then the FIFO head."""
        if self.retry_slot is not None:
            request, self.retry_slot = self.retry_slot, None
            return request
        if self.pending:
            return self.pending.popleft()
        return None

    def mark_dispatched(self, request: PendingRequest, now_ms: float) -> None:
        """Record that a request has been handed to a worker."""
        self.in_flight[request.id] = request
        self.last_dispatch_at_ms = now_ms

    def mark_finished(self, request: PendingRequest) -> bool:
        """Record that a worker is done with a request.

        Returns:
            False if the request was no longer tracked (drained by shutdown).
        """
        return self.in_flight.pop(request.id, None) is not None

    def drain_waiting(self) -> list[PendingRequest]:
        """Remove and return every queued, slotted and delayed request."""
        drained: list[PendingRequest] = []
        if self.retry_slot is not None:
            drained.append(self.retry_slot)
            self.retry_slot = None
        drained.extend(self.pending)
        drained.extend(self.delayed)
        self.pending.clear()
        self.delayed.clear()
        return drained

    def drain_all(self) -> list[PendingRequest]:
        """Remove and return every request, in-flight ones included."""
        drained = self.drain_waiting()
        drained.extend(self.in_flight.values())
        self.in_flight.clear()
        return drained


def new_domain_queue(
    origin: str,
    failure_threshold: int,
    cooldown_duration_ms: float,
    clock: Callable[[], float],
) -> DomainQueue:
    """Create a queue with a fresh closed breaker for an origin."""
    breaker = CircuitBreaker(
        origin=origin,
        failure_threshold=failure_threshold,
        cooldown_duration_ms=cooldown_duration_ms,
        clock=clock,
    )
    return DomainQueue(origin, breaker)
