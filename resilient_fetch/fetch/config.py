"""Configuration models for the resilient fetch client."""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from resilient_fetch.fetch.constants import (
    DEFAULT_DISPATCH_INTERVAL_MS,
    DEFAULT_MAX_RESPONSE_SIZE_BYTES,
    DEFAULT_USER_AGENT,
)
from resilient_fetch.fetch.models import RetryPolicy


_FORBIDDEN_CONFIG_HEADERS = frozenset({"authorization", "cookie", "x-api-key"})


def _reject_auth_headers(headers: dict[str, str]) -> dict[str, str]:
    for key in headers:
        if key.lower() in _FORBIDDEN_CONFIG_HEADERS:
            msg = (
                f"Header '{key}' must not be stored in config; "
                "pass it per request instead"
            )
            raise ValueError(msg)
    return headers


class DomainProfile(BaseModel):
    """Per-origin overrides for headers and timeout.

    The pattern is matched against the request host.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    domain_pattern: Annotated[
        str, Field(min_length=1, description="Regex pattern for matching hosts")
    ]
    headers: dict[str, str] = Field(
        default_factory=dict, description="Headers to add for this host"
    )
    timeout_ms: Annotated[int | None, Field(ge=1000, le=300_000)] = None

    @field_validator("domain_pattern")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        """Validate that domain_pattern is a valid regex."""
        try:
            re.compile(v)
        except re.error as e:
            msg = f"Invalid regex pattern: {e}"
            raise ValueError(msg) from e
        return v

    @field_validator("headers")
    @classmethod
    def validate_no_auth_headers(cls, v: dict[str, str]) -> dict[str, str]:
        """Ensure no credentials are stored in config."""
        return _reject_auth_headers(v)

    def matches(self, host: str) -> bool:
        """Check if this profile matches a host."""
        return bool(re.match(self.domain_pattern, host))


class CircuitBreakerConfig(BaseModel):
    """Failure threshold and cooldown for per-origin circuit breakers.

    The breaker admits a single probe once half the cooldown has elapsed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    failure_threshold: Annotated[int, Field(ge=1, le=1000)] = 5
    cooldown_duration_ms: Annotated[int, Field(ge=0, le=86_400_000)] = 600_000


class FetchConfig(BaseModel):
    """Configuration for the resilient fetch client.

    Central configuration for scheduling (concurrency and per-origin pacing),
    retries, circuit breaking and per-origin request settings.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    global_concurrency: Annotated[int, Field(ge=1, le=256)] = 10
    domain_concurrency: Annotated[int, Field(ge=1, le=64)] = 2
    min_time_between_requests_ms: Annotated[int, Field(ge=0, le=600_000)] = 1500
    request_timeout_ms: Annotated[int, Field(ge=1, le=300_000)] = 30_000
    dispatch_interval_ms: Annotated[int, Field(ge=1, le=10_000)] = (
        DEFAULT_DISPATCH_INTERVAL_MS
    )
    max_response_size_bytes: Annotated[int, Field(ge=1024, le=100 * 1024 * 1024)] = (
        DEFAULT_MAX_RESPONSE_SIZE_BYTES
    )
    user_agent: Annotated[str, Field(min_length=1, max_length=500)] = (
        DEFAULT_USER_AGENT
    )
    default_headers: dict[str, str] = Field(default_factory=dict)
    follow_redirects: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    domain_profiles: list[DomainProfile] = Field(default_factory=list)

    @field_validator("default_headers")
    @classmethod
    def validate_default_headers(cls, v: dict[str, str]) -> dict[str, str]:
        """Ensure no credentials are stored in config."""
        return _reject_auth_headers(v)

    def get_profile_for_host(self, host: str) -> DomainProfile | None:
        """Get the first domain profile matching a host.

        Args:
            host: The host to look up.

        Returns:
            Matching DomainProfile, or None if no match.
        """
        for profile in self.domain_profiles:
            if profile.matches(host):
                return profile
        return None

    def get_timeout_ms_for_host(self, host: str) -> int:
        """Get the request timeout for a host in milliseconds."""
        profile = self.get_profile_for_host(host)
        if profile and profile.timeout_ms is not None:
            return profile.timeout_ms
        return self.request_timeout_ms

    def get_headers_for_host(self, host: str) -> dict[str, str]:
        """Get default plus host-specific headers.

        Args:
            host: The host to look up.

        Returns:
            Dictionary of headers.
        """
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "*/*",
            **self.default_headers,
        }
        profile = self.get_profile_for_host(host)
        if profile:
            headers.update(profile.headers)
        return headers
