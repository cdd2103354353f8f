"""
Size-limited least-recently-used cache.

Values that hold an external resource (typically an open output file) are
handed to a `release` callable when they leave the cache, whether through
eviction, removal, overwrite, `clear()` or `close()`. Each value is released
exactly once.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

K = TypeVar("K")
V = TypeVar("V")


class Closeable(Protocol):
    def close(self) -> None: ...


def close_value(value: Closeable) -> None:
    """Release callable for file-like cache values."""
    value.close()


class BoundedCache(Generic[K, V]):
    """
    LRU map with hit/miss/forced-close counters.

    The OrderedDict is the map and the recency list at once: the first entry is
    the least recently used, the last entry the most recently used.
    """

    def __init__(self, capacity: int, release: Callable[[V], None] | None = None) -> None:
        if capacity < 1:
            msg = f"Cache capacity must be positive, got {capacity}"
            logger.error(msg)
            raise ValueError(msg)
        self.capacity = capacity
        self._release = release
        self._entries: OrderedDict[K, V] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.forced_closes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        """Membership test; does not change the eviction order."""
        return key in self._entries

    def get(self, key: K) -> V | None:
        if key not in self._entries:
            self.misses += 1
            return None
        self.hits += 1
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: K, value: V) -> None:
        if key in self._entries:
            previous = self._entries[key]
            self._entries[key] = value
            self._entries.move_to_end(key)
            if previous is not value:
                self._free(previous)
            return
        while len(self._entries) >= self.capacity:
            oldest, evicted = self._entries.popitem(last=False)
            logger.trace(f"Evicting least recently used cache entry {oldest!r}")
            self._force_close(evicted)
        self._entries[key] = value

    def pop(self, key: K) -> V | None:
        """Remove `key`, releasing its value. Returns the released value or None."""
        if key not in self._entries:
            return None
        value = self._entries.pop(key)
        self._force_close(value)
        return value

    def clear(self) -> None:
        """Release every value, least recently used first, and empty the cache."""
        while self._entries:
            _, value = self._entries.popitem(last=False)
            self._free(value)

    def close(self) -> None:
        self.clear()

    def __enter__(self) -> BoundedCache[K, V]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _force_close(self, value: V) -> None:
        if self._release is not None:
            self.forced_closes += 1
        self._free(value)

    def _free(self, value: V) -> None:
        if self._release is not None:
            self._release(value)
