import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, Iterator, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: Optional[V]
    last_update: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return self.last_update >= now - ttl_seconds


class LRUCache(Generic[K, V]):
    """Bounded least-recently-used map of CacheEntry, safe to share between threads"""

    def __init__(self, max_entries: int):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[CacheEntry[V]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def put(self, key: K, value: Optional[V], last_update: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, last_update=last_update)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __contains__(self, key: K) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._entries))
