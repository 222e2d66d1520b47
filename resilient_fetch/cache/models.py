"""Data models for the multi-tier cache."""

import copy
import time
from dataclasses import dataclass, replace
from typing import Any


def epoch_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


@dataclass
class CacheMetadata:
    """Freshness and provenance information for a cached value.

    All timestamps are wall-clock epoch milliseconds so that entries keep
    their meaning after a restart.

    Attributes:
        origin_url: URL (or raw key) the value was fetched from.
        fetched_at_ms: When the value was fetched.
        ttl_ms: Freshness lifetime.
        expires_at_ms: fetched_at_ms + ttl_ms.
        http_status: Status of the response that produced the value.
        attempt_count: Attempts it took to fetch the value.
        etag: ETag validator, if known.
        last_modified: Last-Modified validator, if known.
        headers: Selected response headers.
        stale: Set on copies handed out after expiry.
    """

    origin_url: str
    fetched_at_ms: float
    ttl_ms: float
    expires_at_ms: float
    http_status: int = 200
    attempt_count: int = 1
    etag: str | None = None
    last_modified: str | None = None
    headers: dict[str, str] | None = None
    stale: bool = False

    @classmethod
    def create(
        cls,
        origin_url: str,
        fetched_at_ms: float,
        ttl_ms: float,
        **kwargs: Any,
    ) -> "CacheMetadata":
        """Build metadata with expires_at_ms derived from fetch time and TTL."""
        return cls(
            origin_url=origin_url,
            fetched_at_ms=fetched_at_ms,
            ttl_ms=ttl_ms,
            expires_at_ms=fetched_at_ms + ttl_ms,
            **kwargs,
        )

    def is_expired(self, now_ms: float) -> bool:
        """Whether the freshness lifetime has passed."""
        return now_ms > self.expires_at_ms

    def is_within_stale_window(self, now_ms: float, window_ms: float) -> bool:
        """Whether an expired value may still be served."""
        return now_ms - self.expires_at_ms < window_ms

    def refreshed(self, fetched_at_ms: float) -> "CacheMetadata":
        """Copy with a new fetch time and the same TTL."""
        return replace(
            self,
            fetched_at_ms=fetched_at_ms,
            expires_at_ms=fetched_at_ms + self.ttl_ms,
            stale=False,
            headers=dict(self.headers) if self.headers is not None else None,
        )

    def copy(self) -> "CacheMetadata":
        """Independent copy."""
        return replace(
            self,
            headers=dict(self.headers) if self.headers is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        return {
            "origin_url": self.origin_url,
            "fetched_at_ms": self.fetched_at_ms,
            "ttl_ms": self.ttl_ms,
            "expires_at_ms": self.expires_at_ms,
            "http_status": self.http_status,
            "attempt_count": self.attempt_count,
            "etag": self.etag,
            "last_modified": self.last_modified,
            "headers": self.headers,
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheMetadata":
        """Rebuild metadata from `to_dict` output."""
        return cls(
            origin_url=data["origin_url"],
            fetched_at_ms=float(data["fetched_at_ms"]),
            ttl_ms=float(data["ttl_ms"]),
            expires_at_ms=float(data["expires_at_ms"]),
            http_status=int(data.get("http_status", 200)),
            attempt_count=int(data.get("attempt_count", 1)),
            etag=data.get("etag"),
            last_modified=data.get("last_modified"),
            headers=data.get("headers"),
            stale=bool(data.get("stale", False)),
        )


@dataclass
class CacheEntry:
    """A cached value with its metadata."""

    key: str
    value: Any
    metadata: CacheMetadata

    def copy(self) -> "CacheEntry":
        """Deep copy, so callers can never mutate cached state."""
        return CacheEntry(
            key=self.key,
            value=copy.deepcopy(self.value),
            metadata=self.metadata.copy(),
        )


@dataclass(frozen=True)
class FetchedValue:
    """Result of a revalidation fetcher that also carries response validators.

    A fetcher may return a plain value instead; then the entry keeps its
    previous validators.
    """

    value: Any
    http_status: int = 200
    etag: str | None = None
    last_modified: str | None = None
    headers: dict[str, str] | None = None
    attempt_count: int = 1


@dataclass
class StoredEntry:
    """A row of the durable store."""

    key: str
    value: Any
    metadata: CacheMetadata
    created_at_ms: float
    accessed_at_ms: float
    access_count: int

    def to_entry(self) -> CacheEntry:
        """Convert to a cache entry."""
        return CacheEntry(key=self.key, value=self.value, metadata=self.metadata)


@dataclass(frozen=True)
class EvictedEntry:
    """An entry pushed out of the memory tier."""

    key: str
    size: int
    access_count: int


@dataclass
class CacheStats:
    """Counters for a cache instance.

    Attributes:
        memory_entries: Entries currently held in memory.
        memory_hits: Fresh hits served from memory.
        memory_misses: Lookups the memory tier could not serve.
        durable_hits: Lookups served from the durable tier.
        durable_misses: Lookups the durable tier could not serve.
        evictions: Entries evicted from memory.
        stale_served_count: Stale values handed out.
        revalidation_count: Refreshes started.
        total_bytes: Estimated bytes held in memory.
    """

    memory_entries: int = 0
    memory_hits: int = 0
    memory_misses: int = 0
    durable_hits: int = 0
    durable_misses: int = 0
    evictions: int = 0
    stale_served_count: int = 0
    revalidation_count: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert stats to dictionary."""
        return {
            "memory_entries": self.memory_entries,
            "memory_hits": self.memory_hits,
            "memory_misses": self.memory_misses,
            "durable_hits": self.durable_hits,
            "durable_misses": self.durable_misses,
            "evictions": self.evictions,
            "stale_served_count": self.stale_served_count,
            "revalidation_count": self.revalidation_count,
            "total_bytes": self.total_bytes,
        }
