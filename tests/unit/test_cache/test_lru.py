"""Unit tests for the in-memory LRU tier."""

import pytest

from resilient_fetch.cache.lru import (
    UNSERIALIZABLE_SIZE_ESTIMATE,
    LRUCache,
    estimate_size,
)
from resilient_fetch.cache.models import CacheEntry, CacheMetadata


def make_entry(key: str, value: object = "v") -> CacheEntry:
    metadata = CacheMetadata.create(origin_url=key, fetched_at_ms=0, ttl_ms=1000)
    return CacheEntry(key=key, value=value, metadata=metadata)


class TestEstimateSize:
    """Tests for value size estimation."""

    def test_bytes(self) -> None:
        assert estimate_size(b"12345") == 5

    def test_json_encoded(self) -> None:
        assert estimate_size({"a": 1}) == len('{"a":1}')

    def test_utf8_length(self) -> None:
        assert estimate_size("é") == len('"\\u00e9"')

    def test_unserializable(self) -> None:
        assert estimate_size(object()) == UNSERIALIZABLE_SIZE_ESTIMATE


class TestEntryLimit:
    """Tests for eviction by entry count."""

    @pytest.fixture
    def lru(self) -> LRUCache:
        return LRUCache(max_entries=2, max_bytes=10_000)

    def test_evicts_least_recently_used(self, lru: LRUCache) -> None:
        lru.put(make_entry("a"), 1, now_ms=0)
        lru.put(make_entry("b"), 1, now_ms=1)

        evicted = lru.put(make_entry("c"), 1, now_ms=2)

        assert [e.key for e in evicted] == ["a"]
        assert "a" not in lru
        assert lru.keys() == ["c", "b"]

    def test_get_refreshes_recency(self, lru: LRUCache) -> None:
        """Test reading a then inserting c evicts b instead of a."""
        lru.put(make_entry("a"), 1, now_ms=0)
        lru.put(make_entry("b"), 1, now_ms=1)
        node = lru.get("a", now_ms=2)
        assert node is not None
        assert node.access_count == 1

        evicted = lru.put(make_entry("c"), 1, now_ms=3)

        assert [e.key for e in evicted] == ["b"]
        assert lru.keys() == ["c", "a"]

    def test_peek_does_not_touch_recency(self, lru: LRUCache) -> None:
        lru.put(make_entry("a"), 1, now_ms=0)
        lru.put(make_entry("b"), 1, now_ms=1)
        lru.peek("a")

        evicted = lru.put(make_entry("c"), 1, now_ms=2)

        assert [e.key for e in evicted] == ["a"]

    def test_replace_does_not_evict(self, lru: LRUCache) -> None:
        lru.put(make_entry("a", "old"), 3, now_ms=0)
        lru.put(make_entry("b"), 1, now_ms=1)

        evicted = lru.put(make_entry("a", "new"), 3, now_ms=2)

        assert evicted == []
        assert len(lru) == 2
        node = lru.peek("a")
        assert node is not None
        assert node.entry.value == "new"
        assert lru.current_bytes == 4


class TestByteLimit:
    """Tests for eviction by estimated bytes."""

    def test_evicts_until_it_fits(self) -> None:
        lru = LRUCache(max_entries=100, max_bytes=10)
        lru.put(make_entry("a"), 4, now_ms=0)
        lru.put(make_entry("b"), 4, now_ms=1)

        evicted = lru.put(make_entry("c"), 6, now_ms=2)

        assert [e.key for e in evicted] == ["a"]
        assert lru.current_bytes == 10

    def test_eviction_stops_when_empty(self) -> None:
        """Test an entry larger than the budget drains the list, then is stored."""
        lru = LRUCache(max_entries=100, max_bytes=10)
        lru.put(make_entry("a"), 4, now_ms=0)

        evicted = lru.put(make_entry("huge"), 50, now_ms=1)

        assert [e.key for e in evicted] == ["a"]
        assert lru.keys() == ["huge"]
        assert lru.current_bytes == 50

    def test_admits(self) -> None:
        lru = LRUCache(max_entries=100, max_bytes=10)
        assert lru.admits(10) is True
        assert lru.admits(11) is False


class TestRemoval:
    """Tests for explicit removal."""

    def test_remove(self) -> None:
        lru = LRUCache(max_entries=10, max_bytes=100)
        lru.put(make_entry("a"), 5, now_ms=0)

        assert lru.remove("a") is True
        assert lru.remove("a") is False
        assert len(lru) == 0
        assert lru.current_bytes == 0

    def test_remove_where(self) -> None:
        lru = LRUCache(max_entries=10, max_bytes=100)
        for key in ("keep", "drop-1", "drop-2"):
            lru.put(make_entry(key), 1, now_ms=0)

        removed = lru.remove_where(lambda node: node.key.startswith("drop"))

        assert sorted(removed) == ["drop-1", "drop-2"]
        assert lru.keys() == ["keep"]

    def test_clear(self) -> None:
        lru = LRUCache(max_entries=10, max_bytes=100)
        lru.put(make_entry("a"), 1, now_ms=0)
        lru.clear()

        assert len(lru) == 0
        assert lru.keys() == []
        assert lru.current_bytes == 0
