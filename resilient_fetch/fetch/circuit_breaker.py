"""Per-origin circuit breaker state machine."""

from collections.abc import Callable
from enum import Enum
from typing import ClassVar

import structlog


logger = structlog.get_logger()


class CircuitState(str, Enum):
    """Circuit breaker states.

    State transitions:
        CLOSED -> OPEN: consecutive failures reached the threshold
        OPEN -> HALF_OPEN: half the cooldown has elapsed
        HALF_OPEN -> CLOSED: the probe request succeeded
        HALF_OPEN -> OPEN: the probe request failed (cooldown restarts)
        OPEN/HALF_OPEN -> CLOSED: manual reset
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitStateError(Exception):
    """Raised when an invalid circuit state transition is attempted."""

    def __init__(self, from_state: CircuitState, to_state: CircuitState) -> None:
        """Initialize the error.

        Args:
            from_state: The current state.
            to_state: The attempted target state.
        """
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid circuit state transition: {from_state.name} -> {to_state.name}"
        )


class CircuitBreaker:
    """Failure-count circuit breaker for a single origin.

    Not thread-safe on its own: the owning client mutates it only while
    holding its scheduler lock.
    """

    VALID_TRANSITIONS: ClassVar[dict[CircuitState, set[CircuitState]]] = {
        CircuitState.CLOSED: {CircuitState.OPEN},
        CircuitState.OPEN: {CircuitState.HALF_OPEN, CircuitState.CLOSED},
        CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
    }

    def __init__(
        self,
        origin: str,
        failure_threshold: int,
        cooldown_duration_ms: float,
        clock: Callable[[], float],
    ) -> None:
        """Initialize a closed breaker.

        Args:
            origin: Origin protected by this breaker, for logging.
            failure_threshold: Consecutive final failures that open the breaker.
            cooldown_duration_ms: Length of the open period.
            clock: Monotonic clock returning milliseconds.
        """
        self._origin = origin
        self._failure_threshold = failure_threshold
        self._cooldown_ms = cooldown_duration_ms
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._open_until_ms: float | None = None
        self._probe_in_flight = False
        self._log = logger.bind(component="circuit_breaker", origin=origin)

    @property
    def consecutive_failures(self) -> int:
        """Final failures since the last success or reset."""
        return self._consecutive_failures

    @property
    def open_until_ms(self) -> float | None:
        """End of the current cooldown, or None while closed."""
        return self._open_until_ms

    @property
    def probe_in_flight(self) -> bool:
        """Whether the half-open probe has been handed out."""
        return self._probe_in_flight

    @property
    def state(self) -> CircuitState:
        """Current state, advancing OPEN to HALF_OPEN once half the cooldown passed."""
        if self._state is CircuitState.OPEN and self._open_until_ms is not None:
            half_open_at = self._open_until_ms - self._cooldown_ms / 2
            if self._clock() >= half_open_at:
                self._transition(CircuitState.HALF_OPEN)
        return self._state

    def can_transition(self, to_state: CircuitState) -> bool:
        """Check if a transition to the given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def _transition(self, to_state: CircuitState) -> None:
        if not self.can_transition(to_state):
            self._log.error(
                "invariant_violation",
                error_type="illegal_state_transition",
                from_state=self._state.name,
                to_state=to_state.name,
            )
            raise CircuitStateError(self._state, to_state)

        old_state = self._state
        self._state = to_state
        self._log.info(
            "circuit_state_transition",
            from_state=old_state.name,
            to_state=to_state.name,
            consecutive_failures=self._consecutive_failures,
        )

    def allows_request(self) -> bool:
        """Whether a new request may be accepted into the origin's queue.

        Half-open breakers accept work; it waits in the queue behind the probe.
        """
        return self.state is not CircuitState.OPEN

    def try_acquire_probe(self) -> bool:
        """Hand out the single half-open probe slot.

        Returns:
            True if the caller may dispatch one request as the probe.
        """
        if self.state is not CircuitState.HALF_OPEN or self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self, was_probe: bool = False) -> bool:
        """Record a successful request.

        Args:
            was_probe: Whether the request was the half-open probe.

        Returns:
            True if this success closed the breaker.
        """
        self._consecutive_failures = 0
        if was_probe:
            self._probe_in_flight = False
        if self.state is CircuitState.HALF_OPEN and was_probe:
            self._open_until_ms = None
            self._transition(CircuitState.CLOSED)
            return True
        return False

    def record_failure(self, was_probe: bool = False) -> bool:
        """Record a final (post-retry) failure.

        Args:
            was_probe: Whether the request was the half-open probe.

        Returns:
            True if this failure opened the breaker.
        """
        self._consecutive_failures += 1

        if was_probe:
            self._probe_in_flight = False
            if self.state is CircuitState.HALF_OPEN:
                self._open()
                return True

        if (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self._failure_threshold
        ):
            self._open()
            return True
        return False

    def _open(self) -> None:
        self._open_until_ms = self._clock() + self._cooldown_ms
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker closed and clear its failure count."""
        self._consecutive_failures = 0
        self._open_until_ms = None
        self._probe_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
