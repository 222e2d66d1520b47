"""Data models for the HTTP fetch layer."""

import json
import random
from collections.abc import Callable
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field

from resilient_fetch.fetch.backoff import apply_retry_after, compute_backoff_delay_ms
from resilient_fetch.fetch.constants import MAX_RETRY_AFTER_MS
from resilient_fetch.fetch.errors import FetchError, HTTPError


class FetchResponse(BaseModel):
    """Successful response returned by the resilient client."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    status_code: int = Field(ge=100, le=599, description="HTTP status code")
    url: Annotated[str, Field(min_length=1, description="Requested URL")]
    final_url: Annotated[
        str, Field(min_length=1, description="Final URL after redirects")
    ]
    headers: dict[str, str] = Field(
        default_factory=dict, description="Response headers (lower-cased names)"
    )
    body_bytes: bytes = Field(default=b"", description="Response body")
    elapsed_ms: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=1, ge=1, description="Attempts made, retries included")
    encoding: str = Field(default="utf-8")

    @property
    def body_size(self) -> int:
        """Get the size of the response body in bytes."""
        return len(self.body_bytes)

    @property
    def text(self) -> str:
        """Decode the body using the response encoding."""
        return self.body_bytes.decode(self.encoding, errors="replace")

    @property
    def etag(self) -> str | None:
        """ETag validator, if the server sent one."""
        return self.headers.get("etag")

    @property
    def last_modified(self) -> str | None:
        """Last-Modified validator, if the server sent one."""
        return self.headers.get("last-modified")

    def json_body(self) -> Any:
        """Parse the body as JSON."""
        return json.loads(self.body_bytes)


class RetryPolicy(BaseModel):
    """Configuration for retry behavior.

    Uses jittered exponential backoff:
    delay = min(base_delay_ms * backoff_factor^(retry - 1) * (1 + jitter), max_delay_ms)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: Annotated[int, Field(ge=0, le=10)] = 3
    base_delay_ms: Annotated[int, Field(ge=0, le=60000)] = 500
    max_delay_ms: Annotated[int, Field(ge=0, le=300000)] = 30000
    backoff_factor: Annotated[float, Field(ge=1.0, le=5.0)] = 2.0
    jitter_ratio: Annotated[float, Field(ge=0.0, le=1.0)] = 0.25
    max_retry_after_ms: Annotated[int, Field(ge=0, le=3_600_000)] = MAX_RETRY_AFTER_MS

    def should_retry(self, error: FetchError, retry_count: int) -> bool:
        """Determine if a failed request should be retried.

        Args:
            error: The error that occurred.
            retry_count: Retries already performed for this request.

        Returns:
            True if the request should be retried.
        """
        if retry_count >= self.max_retries:
            return False
        return error.retryable

    def get_delay_ms(
        self,
        retry_count: int,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Calculate the backoff delay before retry number `retry_count`.

        Args:
            retry_count: 1-based retry number.
            rand: Source of uniform numbers in [0, 1).

        Returns:
            Delay in milliseconds.
        """
        return compute_backoff_delay_ms(
            retry_count,
            base_delay_ms=self.base_delay_ms,
            backoff_factor=self.backoff_factor,
            max_delay_ms=self.max_delay_ms,
            jitter_ratio=self.jitter_ratio,
            rand=rand,
        )

    def delay_for_error_ms(
        self,
        error: FetchError,
        retry_count: int,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Delay before retrying after `error`, honouring any Retry-After hint.

        Args:
            error: The error that triggered the retry.
            retry_count: 1-based retry number.
            rand: Source of uniform numbers in [0, 1).

        Returns:
            Delay in milliseconds.
        """
        hint = error.retry_after_ms if isinstance(error, HTTPError) else None
        return apply_retry_after(
            self.get_delay_ms(retry_count, rand),
            hint,
            self.max_retry_after_ms,
        )
