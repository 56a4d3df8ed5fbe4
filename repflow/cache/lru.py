"""Bounded in-process LRU tier."""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class LRUCache(Generic[V]):
    """Least-recently-used map with per-entry expiry.

    Expired entries are dropped when read; capacity overflow evicts the
    entry that was used longest ago.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._data: "OrderedDict[str, Tuple[V, datetime]]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str, now: datetime) -> Optional[V]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if now >= expires_at:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: V, expires_at: datetime) -> None:
        with self._lock:
            self._data[key] = (value, expires_at)
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)
                self.evictions += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
