"""Multi-tier cache: LRU memory tier over an optional durable store."""

import copy
import threading
from collections.abc import Callable
from dataclasses import replace
from fnmatch import fnmatchcase
from typing import Any

import structlog

from resilient_fetch.cache.config import CacheConfig
from resilient_fetch.cache.durable import DurableStore
from resilient_fetch.cache.errors import DurableStoreError
from resilient_fetch.cache.keys import normalize_cache_key
from resilient_fetch.cache.lru import LRUCache, estimate_size
from resilient_fetch.cache.models import (
    CacheEntry,
    CacheMetadata,
    CacheStats,
    EvictedEntry,
    FetchedValue,
    epoch_ms,
)
from resilient_fetch.cache.revalidation import RevalidationCoordinator
from resilient_fetch.observability.events import EventBus, FetchEvent


logger = structlog.get_logger()


class MultiTierCache:
    """Cache with a bounded memory tier, a durable tier and stale-while-revalidate.

    Lookups try memory first and fall back to the durable store, promoting
    durable hits into memory. Expired entries are still served, marked
    stale, while they are within the stale window. Writes go to both tiers
    synchronously; durable store failures are logged and published as
    events, never raised.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        store: DurableStore | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = epoch_ms,
        start_cleanup: bool = True,
    ) -> None:
        """Initialize the cache.

        Args:
            config: Cache configuration (defaults apply when omitted).
            store: Connected durable store; ignored unless persistence is enabled.
            event_bus: Bus receiving cache events.
            clock: Wall clock in epoch milliseconds.
            start_cleanup: Whether to start the periodic sweep thread.
        """
        self._config = config or CacheConfig()
        self._store = store if self._config.persist_to_durable_store else None
        self._events = event_bus or EventBus()
        self._clock = clock
        self._lock = threading.RLock()
        self._memory = LRUCache(
            max_entries=self._config.memory_max_entries,
            max_bytes=self._config.max_bytes,
        )
        self._stats = CacheStats()
        self._coordinator = RevalidationCoordinator()
        self._stop = threading.Event()
        self._cleanup_thread: threading.Thread | None = None
        self._log = logger.bind(component="cache")

        if start_cleanup:
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                name="cache-cleanup",
                daemon=True,
            )
            self._cleanup_thread.start()

        self._log.info(
            "cache_initialized",
            memory_max_entries=self._config.memory_max_entries,
            default_ttl_ms=self._config.default_ttl_ms,
            stale_while_revalidate=self._config.stale_while_revalidate,
            persist_to_durable_store=self._store is not None,
        )

    @property
    def config(self) -> CacheConfig:
        """Configuration in effect."""
        return self._config

    @property
    def events(self) -> EventBus:
        """Bus receiving this cache's events."""
        return self._events

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> CacheEntry | None:
        """Look up a key.

        Args:
            key: Raw cache key (normalized internally).

        Returns:
            A copy of the entry with `metadata.stale` set when it is past
            its TTL but still servable, or None on a miss.
        """
        return self._lookup(normalize_cache_key(key))

    def has(self, key: str) -> bool:
        """Whether either tier holds an entry for the key, fresh or not."""
        nkey = normalize_cache_key(key)
        with self._lock:
            if nkey in self._memory:
                return True
        if self._store is None:
            return False
        try:
            return self._store.exists(nkey)
        except DurableStoreError as e:
            self._report_store_error("exists", nkey, e)
            return False

    def keys(self, pattern: str | None = None) -> list[str]:
        """List normalized keys from both tiers.

        Args:
            pattern: Optional glob pattern (`*` and `?` wildcards).

        Returns:
            Sorted, de-duplicated keys.
        """
        with self._lock:
            found = set(self._memory.keys())
        if pattern is not None:
            found = {k for k in found if fnmatchcase(k, pattern)}

        if self._store is not None:
            try:
                found.update(self._store.list_keys(pattern))
            except DurableStoreError as e:
                self._report_store_error("list_keys", None, e)

        return sorted(found)

    def is_revalidating(self, key: str) -> bool:
        """Whether a refresh for the key is running."""
        return self._coordinator.in_progress(normalize_cache_key(key))

    def get_stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        with self._lock:
            return replace(
                self._stats,
                memory_entries=len(self._memory),
                total_bytes=self._memory.current_bytes,
            )

    def _lookup(
        self, nkey: str, *, stale_fallback: bool = False
    ) -> CacheEntry | None:
        now = self._clock()
        serve_stale_memory = stale_fallback or self._config.stale_while_revalidate

        with self._lock:
            node = self._memory.get(nkey, now)
            result: CacheEntry | None = None
            if node is not None:
                metadata = node.entry.metadata
                if not metadata.is_expired(now):
                    self._stats.memory_hits += 1
                    result = node.entry.copy()
                elif serve_stale_memory and self._within_stale_window(metadata, now):
                    self._stats.stale_served_count += 1
                    result = node.entry.copy()
                    result.metadata.stale = True
            if result is None:
                self._stats.memory_misses += 1

        if result is not None:
            self._publish_hit(nkey, "memory", result)
            return result

        if self._store is None:
            self._publish_miss(nkey)
            return None

        try:
            stored = self._store.get(nkey)
        except DurableStoreError as e:
            self._report_store_error("get", nkey, e)
            stored = None

        servable = stored is not None and (
            not stored.metadata.is_expired(now)
            or self._within_stale_window(stored.metadata, now)
        )
        if stored is None or not servable:
            with self._lock:
                self._stats.durable_misses += 1
            self._publish_miss(nkey)
            return None

        entry = stored.to_entry()
        size = estimate_size(entry.value)
        with self._lock:
            self._stats.durable_hits += 1
            evicted = self._admit(entry, size, now)
            result = entry.copy()
            if stored.metadata.is_expired(now):
                self._stats.stale_served_count += 1
                result.metadata.stale = True

        self._publish_evictions(evicted)
        self._publish_hit(nkey, "durable", result)
        self._log.debug("durable_entry_promoted", key=nkey)
        return result

    def _within_stale_window(self, metadata: CacheMetadata, now: float) -> bool:
        return metadata.is_within_stale_window(
            now, self._config.stale_if_error_window_ms
        )

    def _publish_hit(self, nkey: str, tier: str, entry: CacheEntry) -> None:
        self._events.emit(FetchEvent.CACHE_HIT, tier=tier, key=nkey)
        if not entry.metadata.stale:
            return
        self._events.emit(FetchEvent.STALE_SERVED, tier=tier, key=nkey)
        if not self._coordinator.in_progress(nkey):
            self._events.emit(FetchEvent.REVALIDATION_TRIGGERED, key=nkey)

    def _publish_miss(self, nkey: str) -> None:
        self._events.emit(FetchEvent.CACHE_MISS, key=nkey)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl_ms: float | None = None,
        origin_url: str | None = None,
        etag: str | None = None,
        last_modified: str | None = None,
        http_status: int = 200,
        attempt_count: int = 1,
        headers: dict[str, str] | None = None,
        fetched_at_ms: float | None = None,
    ) -> None:
        """Store a value in both tiers.

        Args:
            key: Raw cache key (normalized internally).
            value: JSON-serializable payload.
            ttl_ms: Freshness lifetime (default: configured TTL).
            origin_url: Source URL (default: the raw key).
            etag: ETag validator.
            last_modified: Last-Modified validator.
            http_status: Status of the response that produced the value.
            attempt_count: Attempts it took to fetch the value.
            headers: Response headers worth keeping.
            fetched_at_ms: Fetch time (default: now).
        """
        nkey = normalize_cache_key(key)
        metadata = CacheMetadata.create(
            origin_url=origin_url or key,
            fetched_at_ms=fetched_at_ms if fetched_at_ms is not None else self._clock(),
            ttl_ms=ttl_ms if ttl_ms is not None else self._config.default_ttl_ms,
            http_status=http_status,
            attempt_count=attempt_count,
            etag=etag,
            last_modified=last_modified,
            headers=dict(headers) if headers is not None else None,
        )
        self._write(nkey, value, metadata)

    def delete(self, key: str) -> bool:
        """Remove a key from both tiers.

        Returns:
            True if either tier held the key.
        """
        nkey = normalize_cache_key(key)
        with self._lock:
            deleted = self._memory.remove(nkey)

        if self._store is not None:
            try:
                deleted = self._store.delete(nkey) or deleted
            except DurableStoreError as e:
                self._report_store_error("delete", nkey, e)

        if deleted:
            self._events.emit(FetchEvent.CACHE_DELETE, key=nkey)
        return deleted

    def clear(self) -> None:
        """Remove every entry from both tiers."""
        with self._lock:
            self._memory.clear()

        if self._store is not None:
            try:
                self._store.clear()
            except DurableStoreError as e:
                self._report_store_error("clear", None, e)

        self._log.info("cache_cleared")
        self._events.emit(FetchEvent.CACHE_CLEARED)

    def _write(self, nkey: str, value: Any, metadata: CacheMetadata) -> None:
        entry = CacheEntry(key=nkey, value=copy.deepcopy(value), metadata=metadata)
        size = estimate_size(entry.value)
        with self._lock:
            evicted = self._admit(entry, size, self._clock())
        self._publish_evictions(evicted)

        if self._store is not None:
            try:
                self._store.upsert(nkey, entry.value, metadata)
            except DurableStoreError as e:
                self._report_store_error("upsert", nkey, e)

        self._events.emit(FetchEvent.CACHE_SET, key=nkey, ttl_ms=metadata.ttl_ms)

    def _admit(self, entry: CacheEntry, size: int, now: float) -> list[EvictedEntry]:
        """Put an entry into memory. Must be called with the lock held."""
        if not self._memory.admits(size):
            self._memory.remove(entry.key)
            self._log.warning(
                "entry_too_large_for_memory",
                key=entry.key,
                size=size,
                max_bytes=self._config.max_bytes,
            )
            return []
        evicted = self._memory.put(entry, size, now)
        self._stats.evictions += len(evicted)
        return evicted

    def _publish_evictions(self, evicted: list[EvictedEntry]) -> None:
        for item in evicted:
            self._log.debug(
                "cache_evicted",
                key=item.key,
                size=item.size,
                access_count=item.access_count,
            )
            self._events.emit(
                FetchEvent.CACHE_EVICTED,
                key=item.key,
                size=item.size,
                access_count=item.access_count,
            )

    def _report_store_error(
        self, operation: str, nkey: str | None, error: DurableStoreError
    ) -> None:
        self._log.warning(
            "durable_store_error",
            operation=operation,
            key=nkey,
            error=str(error),
        )
        self._events.emit(
            FetchEvent.DURABLE_STORE_ERROR,
            operation=operation,
            key=nkey,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Revalidation
    # ------------------------------------------------------------------

    def revalidate(self, key: str, fetcher: Callable[[], Any]) -> Any:
        """Refresh a key, sharing one fetch among concurrent callers.

        On success the fresh value is written back with the previous TTL and
        origin URL. If the fetcher returns a FetchedValue its validators are
        stored too.

        Args:
            key: Raw cache key (normalized internally).
            fetcher: Callable returning the new value or a FetchedValue.

        Returns:
            The refreshed value, or the still servable stale value if the
            fetcher failed.

        Raises:
            Exception: The fetcher's exception when nothing servable exists.
        """
        nkey = normalize_cache_key(key)
        return self._coordinator.run(
            nkey, lambda: self._perform_revalidation(nkey, key, fetcher)
        )

    def _perform_revalidation(
        self, nkey: str, raw_key: str, fetcher: Callable[[], Any]
    ) -> Any:
        with self._lock:
            self._stats.revalidation_count += 1
        previous = self._current_metadata(nkey)

        try:
            result = fetcher()
        except Exception as e:  # noqa: BLE001
            self._log.warning("revalidation_failed", key=nkey, error=str(e))
            self._events.emit(FetchEvent.REVALIDATION_FAILED, key=nkey, error=str(e))
            fallback = self._lookup(nkey, stale_fallback=True)
            if fallback is not None:
                return fallback.value
            raise

        now = self._clock()
        if previous is not None:
            metadata = previous.refreshed(now)
        else:
            metadata = CacheMetadata.create(
                origin_url=raw_key,
                fetched_at_ms=now,
                ttl_ms=self._config.default_ttl_ms,
            )

        value = result
        if isinstance(result, FetchedValue):
            value = result.value
            metadata = replace(
                metadata,
                http_status=result.http_status,
                etag=result.etag,
                last_modified=result.last_modified,
                headers=dict(result.headers) if result.headers is not None else None,
                attempt_count=result.attempt_count,
            )
        else:
            metadata = replace(metadata, attempt_count=1)

        self._write(nkey, value, metadata)
        self._log.info("revalidation_succeeded", key=nkey)
        self._events.emit(FetchEvent.REVALIDATION_SUCCEEDED, key=nkey)
        return value

    def _current_metadata(self, nkey: str) -> CacheMetadata | None:
        with self._lock:
            node = self._memory.peek(nkey)
            if node is not None:
                return node.entry.metadata.copy()

        if self._store is None:
            return None
        try:
            stored = self._store.get(nkey)
        except DurableStoreError as e:
            self._report_store_error("get", nkey, e)
            return None
        return stored.metadata if stored is not None else None

    # ------------------------------------------------------------------
    # Sweep and lifecycle
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> int:
        """Remove entries that are past their stale window from both tiers.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        window = self._config.stale_if_error_window_ms

        with self._lock:
            removed = self._memory.remove_where(
                lambda node: now > node.entry.metadata.expires_at_ms + window
            )
        cleaned = len(removed)

        if self._store is not None:
            try:
                cleaned += self._store.delete_expired_before(now - window)
            except DurableStoreError as e:
                self._report_store_error("delete_expired_before", None, e)

        if cleaned > 0:
            self._log.info("cache_cleanup", entries_cleaned=cleaned)
            self._events.emit(FetchEvent.CACHE_CLEANUP, entries_cleaned=cleaned)
        return cleaned

    def _cleanup_loop(self) -> None:
        interval_s = self._config.cleanup_interval_ms / 1000.0
        while not self._stop.wait(interval_s):
            self.cleanup_expired()

    def shutdown(self) -> None:
        """Stop the sweep thread and drop the memory tier.

        The durable store is not closed here. A cache never owns the store
        it was given: `FetchLayer.shutdown()` closes the store it opened
        itself, and callers that pass their own store to `MultiTierCache`
        or `FetchLayer` must call `store.close()` after this returns.
        """
        if self._stop.is_set():
            return
        self._stop.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=5.0)
        with self._lock:
            self._memory.clear()
        self._log.info("cache_shutdown")

    def __enter__(self) -> "MultiTierCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
