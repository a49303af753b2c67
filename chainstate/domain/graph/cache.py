"""
Bounded insertion-ordered cache for graph store namespaces.
"""

from __future__ import annotations

from typing import Generic, Iterator, TypeVar

from chainstate.utils.logging import get_logger

logger = get_logger("graph.cache")

T = TypeVar("T")


class BoundedCache(Generic[T]):
    """Insertion-ordered key -> record map capped at ``max_size``.

    Overflow evicts the oldest keys until the cache is back at the cap.
    ``compact()`` frees an extra ``cleanup_buffer`` slots below the cap.
    Re-inserting an existing key keeps its original insertion position.
    Eviction only ever touches memory.
    """

    def __init__(self, name: str, max_size: int, cleanup_buffer: int = 100):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.name = name
        self.max_size = max_size
        self.cleanup_buffer = max(0, cleanup_buffer)
        self._items: dict[str, T] = {}
        self.evicted_count = 0

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def get(self, key: str) -> T | None:
        return self._items.get(key)

    def put(self, key: str, value: T) -> list[str]:
        """Insert or replace ``key``; returns any keys evicted."""
        self._items[key] = value
        if len(self._items) > self.max_size:
            return self._evict(len(self._items) - self.max_size)
        return []

    def discard(self, key: str) -> None:
        self._items.pop(key, None)

    def values(self) -> list[T]:
        return list(self._items.values())

    def compact(self) -> list[str]:
        """Shrink to ``max_size - cleanup_buffer`` entries."""
        floor = max(0, self.max_size - self.cleanup_buffer)
        if len(self._items) <= floor:
            return []
        return self._evict(len(self._items) - floor)

    def clear(self) -> None:
        self._items.clear()

    def _evict(self, count: int) -> list[str]:
        victims = list(self._items)[:count]
        for key in victims:
            del self._items[key]
        self.evicted_count += len(victims)
        logger.debug(f"Evicted {len(victims)} entries from '{self.name}' cache")
        return victims
