"""In-process event bus for fetch and cache observability events.

The fetch client and the cache publish lifecycle events (request queued,
retry scheduled, circuit opened, cache hit, stale served, ...) so that an
external logging or metrics collaborator can subscribe without the core
depending on it.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog


logger = structlog.get_logger()


class FetchEvent(str, Enum):
    """Names of events published by the fetch layer."""

    REQUEST_QUEUED = "request-queued"
    REQUEST_SUCCESS = "request-success"
    REQUEST_RETRY = "request-retry"
    REQUEST_FAILED = "request-failed"
    CIRCUIT_OPENED = "circuit-opened"
    CIRCUIT_CLOSED = "circuit-closed"
    CIRCUIT_RESET = "circuit-reset"
    CACHE_HIT = "cache-hit"
    CACHE_MISS = "cache-miss"
    CACHE_SET = "cache-set"
    CACHE_DELETE = "cache-delete"
    CACHE_CLEARED = "cache-cleared"
    CACHE_EVICTED = "cache-evicted"
    CACHE_CLEANUP = "cache-cleanup"
    STALE_SERVED = "stale-served"
    REVALIDATION_TRIGGERED = "revalidation-triggered"
    REVALIDATION_SUCCEEDED = "revalidation-succeeded"
    REVALIDATION_FAILED = "revalidation-failed"
    DURABLE_STORE_ERROR = "durable-store-error"


@dataclass(frozen=True)
class EventRecord:
    """A published event and its payload."""

    event: FetchEvent
    payload: dict[str, Any] = field(default_factory=dict)


EventListener = Callable[[EventRecord], None]


class EventBus:
    """Thread-safe publish/subscribe hub for `FetchEvent` notifications.

    Listeners run synchronously in the publishing thread. A listener that
    raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self) -> None:
        """Initialize an empty bus."""
        self._lock = threading.Lock()
        self._listeners: dict[FetchEvent | None, list[EventListener]] = {}
        self._log = logger.bind(component="events")

    def subscribe(
        self,
        listener: EventListener,
        event: FetchEvent | None = None,
    ) -> Callable[[], None]:
        """Register a listener.

        Args:
            listener: Callable receiving each matching `EventRecord`.
            event: Event to listen for, or None for every event.

        Returns:
            A callable that removes the listener again.
        """
        with self._lock:
            self._listeners.setdefault(event, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(event, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def emit(self, event: FetchEvent, **payload: Any) -> None:
        """Publish an event to its listeners and to wildcard listeners.

        Args:
            event: The event being published.
            **payload: Event-specific fields.
        """
        record = EventRecord(event=event, payload=payload)
        with self._lock:
            listeners = [
                *self._listeners.get(event, []),
                *self._listeners.get(None, []),
            ]

        self._log.debug("event_published", event_name=event.value, **payload)

        for listener in listeners:
            try:
                listener(record)
            except Exception as e:  # noqa: BLE001
                self._log.warning(
                    "event_listener_failed",
                    event_name=event.value,
                    error=str(e),
                )

    def clear(self) -> None:
        """Remove every listener."""
        with self._lock:
            self._listeners.clear()
