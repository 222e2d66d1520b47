"""structlog setup for the fetch layer and its command-line tools."""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, TextIO

import structlog

from resilient_fetch.fetch.redact import redact_url_credentials


# Chatty third-party loggers held at WARNING unless debugging
_NOISY_LOGGERS = ("httpx", "httpcore")

_URL_FIELDS = ("url", "final_url", "origin_url")


def redact_url_fields(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor hiding credentials in URL-valued fields."""
    for field in _URL_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str):
            event_dict[field] = redact_url_credentials(value)
    return event_dict


def configure_logging(
    level: int = logging.INFO,
    output: TextIO | None = None,
    json_format: bool = True,
) -> None:
    """Route structlog and stdlib logging to one stream.

    Events carry ISO timestamps, the log level and any bound contextvars
    (see bind_command_context). URL fields are redacted on the way out.

    Args:
        level: Minimum level emitted (default: INFO).
        output: Destination stream (default: the current stderr).
        json_format: Render JSON lines instead of the colored console format.
    """
    stream = output if output is not None else sys.stderr

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer(sort_keys=True)
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_url_fields,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=stream, level=level)
    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, optionally named."""
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


def bind_command_context(command: str, invocation_id: str) -> None:
    """Attach the CLI command and invocation id to every later log event."""
    structlog.contextvars.bind_contextvars(
        command=command, invocation_id=invocation_id
    )


def clear_command_context() -> None:
    """Drop the context set by bind_command_context."""
    structlog.contextvars.unbind_contextvars("command", "invocation_id")
