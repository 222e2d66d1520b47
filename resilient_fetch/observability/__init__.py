"""Observability helpers: structured logging and the event bus."""

from resilient_fetch.observability.events import EventBus, FetchEvent
from resilient_fetch.observability.logging import (
    bind_command_context,
    clear_command_context,
    configure_logging,
    get_logger,
)


__all__ = [
    "EventBus",
    "FetchEvent",
    "bind_command_context",
    "clear_command_context",
    "configure_logging",
    "get_logger",
]
