"""Bounded in-memory LRU tier."""

import json
from collections.abc import Callable, Iterator
from typing import Any

from resilient_fetch.cache.models import CacheEntry, EvictedEntry


# Size assumed for values that cannot be serialized
UNSERIALIZABLE_SIZE_ESTIMATE = 1000


def estimate_size(value: Any) -> int:
    """Estimate the memory footprint of a cached value.

    Args:
        value: Cached payload.

    Returns:
        Length of the raw bytes, or of the UTF-8 JSON encoding.
    """
    if isinstance(value, bytes | bytearray):
        return len(value)
    try:
        return len(json.dumps(value, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError):
        return UNSERIALIZABLE_SIZE_ESTIMATE


class LRUNode:
    """A cached entry linked into the recency list."""

    __slots__ = (
        "access_count",
        "entry",
        "last_accessed_at_ms",
        "next",
        "prev",
        "size_estimate",
    )

    def __init__(self, entry: CacheEntry, size_estimate: int, now_ms: float) -> None:
        self.entry = entry
        self.size_estimate = size_estimate
        self.access_count = 0
        self.last_accessed_at_ms = now_ms
        self.prev: LRUNode | None = None
        self.next: LRUNode | None = None

    @property
    def key(self) -> str:
        return self.entry.key


class LRUCache:
    """Doubly-linked LRU bounded by entry count and estimated bytes.

    Head is the most recently used node, tail the least. A node is in the
    key map if and only if it is linked into the list.

    Not thread-safe; the multi-tier cache serializes access under its lock.
    """

    def __init__(self, max_entries: int, max_bytes: int) -> None:
        """Initialize an empty cache.

        Args:
            max_entries: Maximum number of entries.
            max_bytes: Maximum total estimated size.
        """
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._nodes: dict[str, LRUNode] = {}
        self._head: LRUNode | None = None
        self._tail: LRUNode | None = None
        self._current_bytes = 0

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    @property
    def current_bytes(self) -> int:
        """Total estimated size of held entries."""
        return self._current_bytes

    def admits(self, size: int) -> bool:
        """Whether an entry of this size can ever fit."""
        return size <= self._max_bytes

    def get(self, key: str, now_ms: float) -> LRUNode | None:
        """Look up a node and mark it most recently used."""
        node = self._nodes.get(key)
        if node is None:
            return None
        self._move_to_head(node)
        node.access_count += 1
        node.last_accessed_at_ms = now_ms
        return node

    def peek(self, key: str) -> LRUNode | None:
        """Look up a node without touching recency."""
        return self._nodes.get(key)

    def put(self, entry: CacheEntry, size: int, now_ms: float) -> list[EvictedEntry]:
        """Insert or replace an entry at the head, evicting from the tail.

        Args:
            entry: Entry to store.
            size: Estimated size of the entry.
            now_ms: Current time.

        Returns:
            Entries evicted to make room.
        """
        self.remove(entry.key)

        evicted: list[EvictedEntry] = []
        while (
            len(self._nodes) >= self._max_entries
            or self._current_bytes + size > self._max_bytes
        ):
            tail = self._tail
            if tail is None:
                break
            evicted.append(self._evict(tail))

        node = LRUNode(entry, size, now_ms)
        self._nodes[entry.key] = node
        self._add_to_head(node)
        self._current_bytes += size
        return evicted

    def remove(self, key: str) -> bool:
        """Remove an entry. Returns False if it was not present."""
        node = self._nodes.pop(key, None)
        if node is None:
            return False
        self._unlink(node)
        self._current_bytes -= node.size_estimate
        return True

    def remove_where(self, predicate: Callable[[LRUNode], bool]) -> list[str]:
        """Remove every node matching a predicate.

        Returns:
            Keys of the removed entries.
        """
        doomed = [key for key, node in self._nodes.items() if predicate(node)]
        for key in doomed:
            self.remove(key)
        return doomed

    def clear(self) -> None:
        """Drop every entry."""
        self._nodes.clear()
        self._head = None
        self._tail = None
        self._current_bytes = 0

    def keys(self) -> list[str]:
        """Keys from most to least recently used."""
        return [node.key for node in self]

    def __iter__(self) -> Iterator[LRUNode]:
        node = self._head
        while node is not None:
            yield node
            node = node.next

    def _evict(self, node: LRUNode) -> EvictedEntry:
        self.remove(node.key)
        return EvictedEntry(
            key=node.key,
            size=node.size_estimate,
            access_count=node.access_count,
        )

    def _add_to_head(self, node: LRUNode) -> None:
        node.prev = None
        node.next = self._head
        if self._head is not None:
            self._head.prev = node
        self._head = node
        if self._tail is None:
            self._tail = node

    def _unlink(self, node: LRUNode) -> None:
        if node.prev is not None:
            node.prev.next = node.next
        else:
            self._head = node.next

        if node.next is not None:
            node.next.prev = node.prev
        else:
            self._tail = node.prev

        node.prev = None
        node.next = None

    def _move_to_head(self, node: LRUNode) -> None:
        if node is self._head:
            return
        self._unlink(node)
        self._add_to_head(node)
