"""Size-bounded key/value store with least-recently-used eviction."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class LRUStore(Generic[K, V]):
    """Ordered mapping that evicts the least recently used entry when full.

    Both reads (get) and writes (set) count as a use.
    """

    def __init__(self, max_size: int, name: str = "store"):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.name = name
        self._data: OrderedDict[K, V] = OrderedDict()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        if key not in self._data:
            return default
        self._data.move_to_end(key)
        return self._data[key]

    def set(self, key: K, value: V) -> None:
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = value
        while len(self._data) > self.max_size:
            evicted, _ = self._data.popitem(last=False)
            logger.debug(f"{self.name}: evicted {evicted!r}")

    def setdefault(self, key: K, factory) -> V:
        """Return the value for key, creating it with factory() if absent."""
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value)
        return value

    def delete(self, key: K) -> bool:
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[K]:
        return list(self._data.keys())

    def values(self) -> list[V]:
        return list(self._data.values())

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._data.keys()))
