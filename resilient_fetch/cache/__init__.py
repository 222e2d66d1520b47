"""Multi-tier cache with stale-while-revalidate semantics.

This module provides:
- A bounded LRU memory tier (entry count and estimated bytes)
- A durable SQLite tier with versioned migrations
- Stale-while-revalidate reads within a configurable stale window
- Single-flight revalidation per normalized key
- A periodic sweep of entries past their stale window
"""

from resilient_fetch.cache.config import CacheConfig
from resilient_fetch.cache.durable import DurableStore, SqliteCacheStore
from resilient_fetch.cache.errors import (
    CacheError,
    DurableStoreError,
    MigrationError,
    StoreNotConnectedError,
)
from resilient_fetch.cache.keys import normalize_cache_key
from resilient_fetch.cache.lru import LRUCache, LRUNode, estimate_size
from resilient_fetch.cache.models import (
    CacheEntry,
    CacheMetadata,
    CacheStats,
    EvictedEntry,
    FetchedValue,
    StoredEntry,
    epoch_ms,
)
from resilient_fetch.cache.revalidation import RevalidationCoordinator
from resilient_fetch.cache.service import MultiTierCache


__all__ = [
    # Cache
    "MultiTierCache",
    "CacheConfig",
    # Tiers
    "LRUCache",
    "LRUNode",
    "DurableStore",
    "SqliteCacheStore",
    "RevalidationCoordinator",
    # Models
    "CacheEntry",
    "CacheMetadata",
    "CacheStats",
    "EvictedEntry",
    "FetchedValue",
    "StoredEntry",
    # Errors
    "CacheError",
    "DurableStoreError",
    "MigrationError",
    "StoreNotConnectedError",
    # Helpers
    "normalize_cache_key",
    "estimate_size",
    "epoch_ms",
]
