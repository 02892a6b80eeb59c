from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class ExpiringMap(Generic[K, V]):
    """Insertion-ordered map whose entries expire after a fixed TTL.

    Expired entries are swept whenever the map is touched, and the oldest
    entries are evicted once ``max_keys`` is exceeded.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_keys: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._max_keys = max(1, int(max_keys))
        self._clock = clock
        self._data: OrderedDict[K, tuple[float, V]] = OrderedDict()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def set(self, key: K, value: V) -> None:
        now = self._clock()
        self._sweep(now)
        self._data[key] = (now + self._ttl_seconds, value)
        self._data.move_to_end(key)
        while len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def get(self, key: K, default: V | None = None) -> V | None:
        self._sweep(self._clock())
        entry = self._data.get(key)
        if entry is None:
            return default
        return entry[1]

    def pop(self, key: K, default: V | None = None) -> V | None:
        self._sweep(self._clock())
        entry = self._data.pop(key, None)
        if entry is None:
            return default
        return entry[1]

    def sweep(self) -> int:
        return self._sweep(self._clock())

    def __len__(self) -> int:
        self._sweep(self._clock())
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        self._sweep(self._clock())
        return key in self._data

    def _sweep(self, now: float) -> int:
        # Entries share one TTL, so insertion order is expiry order.
        removed = 0
        while self._data:
            key, (expires_at, _) = next(iter(self._data.items()))
            if expires_at > now:
                break
            del self._data[key]
            removed += 1
        return removed
