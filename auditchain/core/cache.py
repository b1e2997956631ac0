"""
Bounded TTL Cache

A small "recently seen" map with explicit capacity and explicit expiry.

- Capacity is a hard bound: inserting past it evicts the least recently
  used entry immediately.
- Every entry expires ``ttl_seconds`` after it was written; expiry is
  checked on every read, and purge_expired() sweeps explicitly.
- The clock is injectable so expiry is testable without sleeping.

Used for the append engine's idempotency fast path and for side-effect
delivery dedup. It only ever accelerates: the store stays authoritative.
The dispatcher calls purge_expired() whenever its worker goes idle.
"""

import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """Thread-safe LRU cache with per-entry time-to-live."""

    def __init__(
        self,
        capacity: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        # key -> (expires_at, value), oldest first
        self._data: "OrderedDict[Hashable, tuple[float, Any]]" = OrderedDict()
        self._lock = Lock()
        self.evictions = 0
        self.expirations = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return the live value for key, or default."""
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return default
            expires_at, value = item
            if expires_at <= self._clock():
                del self._data[key]
                self.expirations += 1
                return default
            self._data.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock() + self._ttl, value)
            self._data.move_to_end(key)
            while len(self._data) > self._capacity:
                self._data.popitem(last=False)
                self.evictions += 1

    def add(self, key: Hashable, value: Any = True) -> bool:
        """
        Insert key only if it is not already live.

        Returns True if this call inserted it.
        """
        with self._lock:
            item = self._data.get(key)
            now = self._clock()
            if item is not None and item[0] > now:
                return False
            self._data[key] = (now + self._ttl, value)
            self._data.move_to_end(key)
            while len(self._data) > self._capacity:
                self._data.popitem(last=False)
                self.evictions += 1
            return True

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
            self.expirations += len(expired)
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


_MISSING = object()
