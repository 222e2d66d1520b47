"""Retry delay computation: jittered exponential backoff and Retry-After hints."""

import random
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime


def compute_backoff_delay_ms(
    retry_count: int,
    base_delay_ms: float,
    backoff_factor: float,
    max_delay_ms: float,
    jitter_ratio: float = 0.25,
    rand: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before retry number `retry_count`.

    delay = min(base * factor^(retry_count - 1) * (1 + jitter), max_delay)
    with jitter drawn uniformly from [0, jitter_ratio].

    Args:
        retry_count: 1-based retry number.
        base_delay_ms: Delay before the first retry.
        backoff_factor: Multiplier applied per retry.
        max_delay_ms: Upper bound on the returned delay.
        jitter_ratio: Maximum relative jitter added to the delay.
        rand: Source of uniform numbers in [0, 1).

    Returns:
        Delay in milliseconds.
    """
    exponent = max(retry_count - 1, 0)
    delay = base_delay_ms * (backoff_factor**exponent)
    delay *= 1.0 + jitter_ratio * rand()
    return min(delay, max_delay_ms)


def parse_retry_after_ms(
    value: str | None,
    now: datetime | None = None,
) -> float | None:
    """Parse a Retry-After header value.

    Args:
        value: Header value (delta-seconds or HTTP date).
        now: Reference time for HTTP dates (default: current UTC time).

    Returns:
        Milliseconds to wait, or None if absent or not parseable.
    """
    if not value:
        return None

    value = value.strip()

    # Try parsing as integer seconds
    try:
        return max(0.0, float(int(value)) * 1000.0)
    except ValueError:
        pass

    # Try parsing as HTTP date
    try:
        when = parsedate_to_datetime(value)
    except (ValueError, TypeError):
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max(0.0, (when - reference).total_seconds() * 1000.0)


def apply_retry_after(
    backoff_ms: float,
    retry_after_ms: float | None,
    max_retry_after_ms: float,
) -> float:
    """Combine a computed backoff with a server Retry-After hint.

    The hint wins whenever it asks for a longer wait; it is capped at
    `max_retry_after_ms`.

    Args:
        backoff_ms: Delay computed by exponential backoff.
        retry_after_ms: Server hint, if any.
        max_retry_after_ms: Cap applied to the hint.

    Returns:
        Effective delay in milliseconds.
    """
    if retry_after_ms is None:
        return backoff_ms
    return max(backoff_ms, min(retry_after_ms, max_retry_after_ms))
